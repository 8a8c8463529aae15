"""Application-wide state passed explicitly to each component.

Holds the catalog, the loan ledger and the session, and fans out change
notifications once a mutation is complete, so presentation layers can
refresh without querying the stores on every keystroke.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from catalog import CatalogStore
from config import CatalogSettings
from loans import LoanLedger

logger = logging.getLogger(__name__)

Listener = Callable[[str], None]

EVENT_BOOKS = "books"
EVENT_LOANS = "loans"
EVENT_SESSION = "session"
EVENT_SETTINGS = "settings"


@dataclass
class AppState:
    catalog: CatalogStore
    ledger: LoanLedger
    settings: CatalogSettings = field(default_factory=CatalogSettings)
    users: List[Any] = field(default_factory=list)
    active_user: Optional[Dict[str, str]] = None
    # Opaque companion data carried with push/pull ("boyouBooks")
    extra: Dict[str, Any] = field(default_factory=dict)
    _listeners: List[Listener] = field(default_factory=list, repr=False)

    @classmethod
    def create(cls, clock=None, settings: Optional[CatalogSettings] = None) -> "AppState":
        catalog = CatalogStore()
        return cls(catalog=catalog, ledger=LoanLedger(catalog, clock=clock),
                   settings=settings or CatalogSettings())

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, *events: str) -> None:
        for event in events:
            for listener in list(self._listeners):
                try:
                    listener(event)
                except Exception:
                    # A broken view must not undo a committed mutation
                    logger.exception("Change listener failed for event %s", event)
