import time
from datetime import datetime, timezone


class SystemClock:
    """Wall clock. Replaced by a fake in tests."""

    def time(self) -> float:
        """Seconds since the epoch."""
        return time.time()

    def now(self) -> datetime:
        return datetime.now(timezone.utc)
