import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Local state
    data_file: Optional[str] = os.getenv("LIBRARY_DB_FILE")

    # Application
    app_name: str = os.getenv("APP_NAME", "Library Catalog")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    admin_username: str = os.getenv("LIBRARY_ADMIN_USERNAME", "admin")

    # Remote sync
    remote_url: str = os.getenv("LIBRARY_REMOTE_URL", "")
    remote_timeout: float = float(os.getenv("LIBRARY_REMOTE_TIMEOUT", "10"))
    sync_debounce_ms: int = int(os.getenv("SYNC_DEBOUNCE_MS", "1500"))
    sync_min_interval_ms: int = int(os.getenv("SYNC_MIN_INTERVAL_MS", "30000"))
    sync_cooldown_ms: int = int(os.getenv("SYNC_COOLDOWN_MS", "60000"))

    # Import layout
    csv_header_rows: int = int(os.getenv("CSV_HEADER_ROWS", "4"))
    csv_copies_per_row: int = int(os.getenv("CSV_COPIES_PER_ROW", "1"))
    import_header_rows: int = int(os.getenv("IMPORT_HEADER_ROWS", "1"))


settings = Settings()


# Wire name -> attribute name for the persisted "settings" entry
_CATALOG_KEYS = {
    "loanDays": "loan_days",
    "guestBorrow": "guest_borrow",
    "defaultCopies": "default_copies",
    "defaultYear": "default_year",
    "autoUpdateInterval": "auto_update_interval",
    "remoteUrl": "remote_url",
}


@dataclass
class CatalogSettings:
    """User-facing options persisted with the catalog.

    These are edited at runtime (by the administrator) and travel with the
    local state, unlike :class:`Settings` which is read from the environment.
    """

    loan_days: int = 14
    guest_borrow: bool = False
    default_copies: int = 1
    default_year: int = 2024
    auto_update_interval: int = 300000  # ms
    remote_url: str = ""

    def to_dict(self) -> Dict[str, Any]:
        values = asdict(self)
        return {wire: values[attr] for wire, attr in _CATALOG_KEYS.items()}

    @staticmethod
    def from_dict(data: Optional[Dict[str, Any]]) -> "CatalogSettings":
        result = CatalogSettings(remote_url=settings.remote_url)
        if not isinstance(data, dict):
            return result
        for wire, attr in _CATALOG_KEYS.items():
            # Accept both the wire name and the attribute name
            if wire in data:
                result.update(**{attr: data[wire]})
            elif attr in data:
                result.update(**{attr: data[attr]})
        return result

    @staticmethod
    def field_name(key: str) -> str:
        """Attribute name for either spelling of a setting (``loanDays`` or ``loan_days``)."""
        return _CATALOG_KEYS.get(key, key)

    def update(self, **changes: Any) -> None:
        """Apply changes, coercing each value to the field's type.

        Every value is coerced before any is assigned, so a bad value leaves
        the settings untouched.
        """
        coerced = {}
        for attr, value in changes.items():
            if attr not in _CATALOG_KEYS.values():
                raise KeyError(attr)
            if value is None:
                continue
            current = getattr(self, attr)
            if isinstance(current, bool):
                if isinstance(value, str):
                    value = value.strip().lower() in ("true", "1", "yes")
                else:
                    value = bool(value)
            elif isinstance(current, int):
                value = int(value)
            else:
                value = str(value).strip()
            coerced[attr] = value
        for attr, value in coerced.items():
            setattr(self, attr, value)
