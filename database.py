import sqlite3
import json
import os
import tempfile
from typing import Any, Dict, Iterable

from dotenv import load_dotenv

# Load .env before reading the environment below, regardless of import order.
load_dotenv()

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) Per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.path.join(tempfile.gettempdir(), f"library_catalog_{os.getpid()}.db")
)

# Keys of the persisted local state
KEY_BOOKS = "books"
KEY_BORROWED = "borrowedBooks"
KEY_USERS = "users"
KEY_ACTIVE_USER = "activeUser"
KEY_SETTINGS = "settings"
KEY_EXTRA = "boyouBooks"

STATE_KEYS = (KEY_BOOKS, KEY_BORROWED, KEY_USERS, KEY_ACTIVE_USER, KEY_SETTINGS, KEY_EXTRA)


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite state database."""
    conn = sqlite3.connect(DATABASE_FILE)
    conn.row_factory = sqlite3.Row
    return conn


def create_tables() -> None:
    """Create the key/value state table if it does not exist."""
    conn = get_db_connection()
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS app_state (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
    finally:
        conn.close()


def initialize_database() -> None:
    """Make sure the database file and tables exist."""
    directory = os.path.dirname(os.path.abspath(DATABASE_FILE))
    os.makedirs(directory, exist_ok=True)
    create_tables()


def load_state(key: str, default: Any = None) -> Any:
    """Return the JSON value stored under ``key``, or ``default``.

    A corrupt value is treated as missing.
    """
    conn = get_db_connection()
    try:
        row = conn.execute("SELECT value FROM app_state WHERE key = ?", (key,)).fetchone()
    finally:
        conn.close()
    if row is None:
        return default
    try:
        return json.loads(row["value"])
    except json.JSONDecodeError:
        return default


def save_state(values: Dict[str, Any]) -> None:
    """Write several keys in one transaction."""
    conn = get_db_connection()
    try:
        with conn:
            for key, value in values.items():
                conn.execute(
                    """
                    INSERT INTO app_state (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, json.dumps(value, ensure_ascii=False)),
                )
    finally:
        conn.close()


def delete_state(keys: Iterable[str]) -> None:
    conn = get_db_connection()
    try:
        with conn:
            conn.executemany("DELETE FROM app_state WHERE key = ?", [(k,) for k in keys])
    finally:
        conn.close()


def clear_state() -> None:
    delete_state(STATE_KEYS)
