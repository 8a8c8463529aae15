"""Push/pull synchronisation with the remote spreadsheet endpoint.

Local edits call :meth:`SyncCoordinator.schedule_push` freely. Three gates
keep the endpoint from being hammered:

* debounce: a burst of calls collapses into one push after a short delay;
* minimum interval: at most one automatic push per interval, across bursts;
* cooldown: after a failed push, automatic pushes are skipped for a while.

Pulls are invoked directly and replace the local catalog and ledger, with
the protect-empty rule guarding against a transiently empty remote sheet.
An empty endpoint URL disables everything.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from app_state import AppState, EVENT_BOOKS, EVENT_LOANS
from book import Book, Loan
from config import settings
from exceptions import ConfirmationRequired, MalformedResponse, SyncError
from services.http_client import RemoteClient
from services.scheduling import AsyncioTimers
from utils.clock import SystemClock

logger = logging.getLogger(__name__)

EMPTY_REMOTE_MESSAGE = (
    "The remote catalog is empty; pulling will clear the local catalog. Overwrite?"
)


class SyncPhase(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    PUSHING = "pushing"


@dataclass
class PullResult:
    applied: bool
    reason: str  # applied | disabled | protected | declined | failed | closed
    books: int = 0
    loans: int = 0
    error: Optional[str] = None


class SyncCoordinator:
    def __init__(self, state: AppState, client: Optional[RemoteClient] = None, clock=None,
                 timers=None, persist: Optional[Callable[[], None]] = None,
                 debounce_ms: Optional[int] = None, min_interval_ms: Optional[int] = None,
                 cooldown_ms: Optional[int] = None):
        self.state = state
        self.clock = clock or SystemClock()
        self.timers = timers or AsyncioTimers()
        self._client = client
        self._owns_client = client is None
        self._persist = persist

        self.debounce = (settings.sync_debounce_ms if debounce_ms is None else debounce_ms) / 1000
        self.min_interval = (settings.sync_min_interval_ms if min_interval_ms is None else min_interval_ms) / 1000
        self.cooldown = (settings.sync_cooldown_ms if cooldown_ms is None else cooldown_ms) / 1000

        self.phase = SyncPhase.IDLE
        self.last_run_at: Optional[float] = None
        self.cooldown_until: float = 0.0
        self._timer = None
        self._push_requested = False
        self._inflight: Optional[asyncio.Future] = None
        self._pull_lock = asyncio.Lock()
        self._auto_pull_task: Optional[asyncio.Task] = None
        self._closed = False

    # ------------------------- Properties ------------------------- #
    @property
    def url(self) -> str:
        return (self.state.settings.remote_url or "").strip()

    @property
    def enabled(self) -> bool:
        return bool(self.url) and not self._closed

    @property
    def client(self) -> RemoteClient:
        if self._client is None:
            self._client = RemoteClient()
        return self._client

    def in_cooldown(self) -> bool:
        return self.clock.time() < self.cooldown_until

    # ------------------------- Push ------------------------- #
    def schedule_push(self) -> None:
        """Arm (or re-arm) the debounce timer. Only the last call of a burst fires."""
        if not self.enabled:
            return
        if self.phase == SyncPhase.PUSHING:
            self._push_requested = True
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.timers.schedule(self.debounce, self._on_debounce_elapsed)
        self.phase = SyncPhase.DEBOUNCING

    async def _on_debounce_elapsed(self) -> None:
        self._timer = None
        await self._run_gated_push()

    async def _run_gated_push(self) -> bool:
        self.phase = SyncPhase.IDLE
        if not self.enabled:
            return False
        now = self.clock.time()
        if now < self.cooldown_until:
            logger.debug("Auto push skipped: cooling down for %.1fs", self.cooldown_until - now)
            return False
        if self.last_run_at is not None and now - self.last_run_at < self.min_interval:
            logger.debug("Auto push skipped: last push %.1fs ago", now - self.last_run_at)
            return False

        ok = False
        self.phase = SyncPhase.PUSHING
        self._inflight = asyncio.get_running_loop().create_future()
        try:
            await self._push()
            self.last_run_at = self.clock.time()
            ok = True
        except SyncError as exc:
            self.cooldown_until = self.clock.time() + self.cooldown
            logger.warning("Auto push failed, backing off for %ss: %s", self.cooldown, exc)
        finally:
            self._finish_push(ok)
        return ok

    def _finish_push(self, ok: bool) -> None:
        self.phase = SyncPhase.IDLE
        if self._inflight is not None and not self._inflight.done():
            self._inflight.set_result(ok)
        self._inflight = None
        if self._push_requested:
            self._push_requested = False
            self.schedule_push()

    async def push_now(self) -> bool:
        """Push immediately, bypassing debounce and throttling.

        Returns False when sync is disabled; raises SyncError on failure.
        """
        if not self.enabled:
            return False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self.phase = SyncPhase.IDLE
        if self._inflight is not None:
            await asyncio.shield(self._inflight)

        self.phase = SyncPhase.PUSHING
        self._inflight = asyncio.get_running_loop().create_future()
        ok = False
        try:
            await self._push()
            self.last_run_at = self.clock.time()
            ok = True
        finally:
            self._finish_push(ok)
        return ok

    def cancel_pending(self) -> None:
        """Drop a debounced push that has not started yet, and any re-arm request."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._push_requested = False
        if self.phase == SyncPhase.DEBOUNCING:
            self.phase = SyncPhase.IDLE

    async def flush(self) -> bool:
        """Run a pending debounced push now, or wait for the one in flight."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            return await self._run_gated_push()
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)
        return False

    def build_payload(self) -> Dict[str, Any]:
        return {
            "books": self.state.catalog.to_list(),
            "borrowedBooks": self.state.ledger.to_list(),
            "boyouBooks": dict(self.state.extra or {}),
        }

    async def _push(self) -> None:
        result = await self.client.post_json(self.url, {"action": "push", "payload": self.build_payload()})
        if not result.get("ok"):
            raise SyncError("Remote endpoint rejected the push")
        logger.info("Pushed %d books and %d loans", len(self.state.catalog), len(self.state.ledger))

    # ------------------------- Pull ------------------------- #
    async def pull(self, interactive: bool = False,
                   confirm: Optional[Callable[[str], bool]] = None) -> PullResult:
        """Fetch the remote catalog and replace the local one.

        Silent (non-interactive) pulls never raise: failures are logged and
        start the cooldown, and an empty remote catalog never overwrites a
        non-empty local one. Interactive pulls raise SyncError and ask
        ``confirm`` before emptying the catalog.
        """
        if not self.enabled:
            return PullResult(applied=False, reason="disabled")
        # One pull at a time; a second caller waits and then pulls fresh data
        async with self._pull_lock:
            return await self._pull(interactive, confirm)

    async def _pull(self, interactive: bool, confirm: Optional[Callable[[str], bool]]) -> PullResult:
        if self._closed:
            return PullResult(applied=False, reason="closed")
        try:
            result = await self.client.post_json(self.url, {"action": "pull"})
            if not result.get("ok"):
                raise SyncError("Remote endpoint rejected the pull")
            books, loans, extra = self._parse_pull(result)
        except SyncError as exc:
            if interactive:
                raise
            self.cooldown_until = self.clock.time() + self.cooldown
            logger.warning("Auto pull failed: %s", exc)
            return PullResult(applied=False, reason="failed", error=str(exc))

        if self._closed:
            return PullResult(applied=False, reason="closed")

        if not books and len(self.state.catalog) > 0:
            if not interactive:
                logger.info("Pull ignored: remote catalog is empty, keeping %d local books",
                            len(self.state.catalog))
                return PullResult(applied=False, reason="protected")
            if confirm is None:
                raise ConfirmationRequired(EMPTY_REMOTE_MESSAGE)
            if not confirm(EMPTY_REMOTE_MESSAGE):
                return PullResult(applied=False, reason="declined")

        self.state.catalog.replace_all(books)
        self.state.ledger.replace_all(loans)
        if isinstance(extra, dict):
            self.state.extra = extra
        if self._persist is not None:
            self._persist()
        self.state.notify(EVENT_BOOKS, EVENT_LOANS)
        logger.info("Pulled %d books and %d loans", len(books), len(loans))
        return PullResult(applied=True, reason="applied", books=len(books), loans=len(loans))

    @staticmethod
    def _parse_pull(result: Dict[str, Any]) -> Tuple[List[Book], List[Loan], Any]:
        data = result.get("data")
        if not isinstance(data, dict):
            raise MalformedResponse("Pull response has no data object")
        raw_books = data.get("books")
        raw_loans = data.get("borrowedBooks")
        if not isinstance(raw_books, list) or not isinstance(raw_loans, list):
            raise MalformedResponse("Pull response must contain books and borrowedBooks lists")
        try:
            books = [Book.from_dict(item) for item in raw_books]
            loans = [Loan.from_dict(item) for item in raw_loans]
        except (KeyError, TypeError, ValueError, AttributeError) as exc:
            raise MalformedResponse(f"Pull response contains an invalid record: {exc}") from exc
        return books, loans, data.get("boyouBooks")

    # ------------------------- Automatic pull ------------------------- #
    def start_auto_pull(self, interval_ms: Optional[int] = None) -> None:
        """Pull once in the background, then every ``interval_ms`` if given."""
        if not self.enabled:
            return
        self.stop_auto_pull()
        self._auto_pull_task = asyncio.get_running_loop().create_task(self._auto_pull_loop(interval_ms))

    def stop_auto_pull(self) -> None:
        if self._auto_pull_task is not None:
            self._auto_pull_task.cancel()
            self._auto_pull_task = None

    @property
    def auto_pull_running(self) -> bool:
        return self._auto_pull_task is not None and not self._auto_pull_task.done()

    async def _auto_pull_loop(self, interval_ms: Optional[int]) -> None:
        await self._auto_pull_once()
        if not interval_ms or interval_ms <= 0:
            return
        while self.enabled:
            await asyncio.sleep(interval_ms / 1000)
            await self._auto_pull_once()

    async def _auto_pull_once(self) -> None:
        if self.in_cooldown():
            logger.debug("Auto pull skipped: cooling down")
            return
        await self.pull(interactive=False)

    # ------------------------- Lifecycle ------------------------- #
    async def close(self) -> None:
        self._closed = True
        self.cancel_pending()
        self.stop_auto_pull()
        shutdown = getattr(self.timers, "shutdown", None)
        if shutdown is not None:
            await shutdown()
        if self._owns_client and self._client is not None:
            await self._client.close()
            self._client = None
        self.phase = SyncPhase.IDLE
