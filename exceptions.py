"""Error types raised by the catalog, loan and sync layers.

Every operation that raises one of these aborts without partial mutation.
Validation errors are also ``ValueError`` and lookups are also
``LookupError`` so callers written against the builtin exceptions keep
working.
"""


class LibraryError(Exception):
    """Base exception for all library errors."""

    pass


# --- Validation ---
class ValidationError(LibraryError, ValueError):
    """Input rejected before any state was touched."""

    pass


class InvalidCode(ValidationError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Invalid book code: {code!r} (expected A/B/C followed by digits).")
        self.code = code


class EmptyTitle(ValidationError):
    def __init__(self) -> None:
        super().__init__("Title cannot be empty.")


class DuplicateCode(ValidationError):
    def __init__(self, code: str) -> None:
        super().__init__(f"Book code {code} already exists.")
        self.code = code


# --- State ---
class StateError(LibraryError):
    """Operation not allowed in the current catalog/ledger state."""

    pass


class NotFound(StateError, LookupError):
    pass


class AlreadyReturned(StateError):
    pass


class NoCopiesAvailable(StateError):
    pass


class AlreadyBorrowed(StateError):
    pass


class InvariantViolation(StateError):
    pass


class HasOpenLoans(StateError):
    pass


class PermissionDenied(StateError):
    pass


# --- Sync ---
class SyncError(LibraryError):
    """Transport failure, non-2xx status or rejected request."""

    pass


class MalformedResponse(SyncError):
    """The endpoint answered, but not with the expected shape."""

    pass


class ConfirmationRequired(LibraryError):
    """A pull would empty a non-empty local catalog and needs an explicit yes."""

    pass
