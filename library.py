import asyncio
import logging
import re
from pathlib import Path
from typing import Callable, Dict, List, Optional

import database
from app_state import AppState, EVENT_BOOKS, EVENT_LOANS, EVENT_SESSION, EVENT_SETTINGS
from book import Book, Loan
from config import CatalogSettings, settings
from database import initialize_database, load_state, save_state
from exceptions import (
    EmptyTitle,
    HasOpenLoans,
    InvalidCode,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from importer import (
    ImportResult,
    export_filename,
    export_loans,
    parse_csv_text,
    read_spreadsheet,
    reconcile_csv_rows,
    reconcile_import_rows,
)
from services.sync_coordinator import PullResult, SyncCoordinator
from utils.clock import SystemClock
from utils.validators import GENRE_ORDER, BookCodeValidator, TextValidator, clean_title

logger = logging.getLogger(__name__)

ROLES = ("guest", "student", "staff")
SORT_FIELDS = ("title", "id", "year")
_TOKEN_SPLIT_RE = re.compile(r"[\s,，]+")


class Library:
    """Owns the catalog, the loan ledger and the session; persists and syncs them."""

    def __init__(self, db_file: Optional[str] = None, clock=None, timers=None, client=None,
                 admin_username: Optional[str] = None) -> None:
        # Callers (and tests) may point the module-level helpers in database.py
        # at another file before the schema is created.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()

        self.clock = clock or SystemClock()
        self.admin_username = admin_username or settings.admin_username
        self.state = AppState.create(clock=self.clock)
        self._load_state()
        self.sync = SyncCoordinator(self.state, client=client, clock=self.clock,
                                    timers=timers, persist=self.save)

    # ------------------------- Session ------------------------- #
    @property
    def current_user(self) -> Optional[Dict[str, str]]:
        return self.state.active_user

    def login(self, username: str, role: str = "student") -> Dict[str, str]:
        username = (username or "").strip()
        if not username:
            raise ValidationError("Username cannot be empty.")
        if role not in ROLES:
            raise ValidationError(f"Unknown role {role!r}. Use one of: {', '.join(ROLES)}.")
        self.state.active_user = {"username": username, "role": role}
        self.save()
        self.state.notify(EVENT_SESSION)
        return dict(self.state.active_user)

    def logout(self) -> None:
        self.state.active_user = None
        self.sync.stop_auto_pull()
        self.save()
        self.state.notify(EVENT_SESSION)

    def is_admin(self) -> bool:
        user = self.state.active_user
        return bool(user and user.get("username") == self.admin_username)

    def require_admin(self, action: str) -> None:
        if not self.is_admin():
            raise PermissionDenied(f"{action}: only the administrator account ({self.admin_username}) may do this.")

    def _require_user(self) -> Dict[str, str]:
        if not self.state.active_user:
            raise PermissionDenied("Please log in first.")
        return self.state.active_user

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        return self.state.subscribe(listener)

    # ------------------------- Books ------------------------- #
    def list_books(self) -> List[Book]:
        return self.state.catalog.records()

    def find_book(self, code: str) -> Optional[Book]:
        return self.state.catalog.find_by_code(code)

    def suggest_next_code(self, genre: Optional[str] = None) -> str:
        prefix = BookCodeValidator.prefix_for_genre(genre)
        return BookCodeValidator.next_available(prefix, self.state.catalog.all_codes())

    def add_book(self, code: str, title: str, year: Optional[int] = None,
                 copies: Optional[int] = None) -> Book:
        """Add a distinct title. Fails if the code is used anywhere in the catalog."""
        self.require_admin("Add book")
        if not BookCodeValidator.validate(code):
            raise InvalidCode(code)
        if not TextValidator.validate_title(title):
            raise EmptyTitle()
        if year is None:
            year = self.state.settings.default_year
        if copies is None:
            copies = self.state.settings.default_copies
        if copies < 1:
            raise ValidationError("Copies must be at least 1.")

        book = Book(id=code, title=title, year=year, copies=copies)
        self.state.catalog.insert_distinct(book)
        self._commit(EVENT_BOOKS)
        logger.info("Added %s (%s)", book.id, book.title)
        return book

    def edit_book(self, code: str, *, title: Optional[str] = None, year: Optional[int] = None,
                  copies: Optional[int] = None) -> Book:
        self.require_admin("Edit book")
        book = self.state.catalog.find_by_code(code)
        if book is None:
            raise NotFound(f"Book {code} not found.")
        new_title = title if title is not None else book.title
        if not TextValidator.validate_title(new_title):
            raise EmptyTitle()
        updated = self.state.catalog.update_record(
            book.id,
            title=new_title,
            year=year if year is not None else book.year,
            copies=copies if copies is not None else book.copies,
            open_loans=self.state.ledger.open_loans_for(book.id),
        )
        self._commit(EVENT_BOOKS)
        return updated

    def delete_book(self, code: str) -> Book:
        self.require_admin("Delete book")
        book = self.state.catalog.find_by_code(code)
        if book is None:
            raise NotFound(f"Book {code} not found.")
        if self.state.ledger.open_loans_for(book.id) > 0:
            raise HasOpenLoans(f"'{book.title}' still has copies on loan.")
        removed = self.state.catalog.remove(book.id)
        self._commit(EVENT_BOOKS)
        return removed

    def search_books(self, query: str = "", genre: Optional[str] = None,
                     sort_by: str = "title", order: str = "asc") -> List[Book]:
        """Filter and order the catalog for display.

        A query made only of book codes (comma or space separated) matches
        those codes exactly; anything else is a case-insensitive substring
        match on title, codes, year and genre. Results are grouped by genre.
        """
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"Invalid sort_by. Allowed: {', '.join(SORT_FIELDS)}")
        if order not in ("asc", "desc"):
            raise ValueError("Invalid order. Allowed: asc, desc")

        query = (query or "").strip()
        tokens = [t for t in _TOKEN_SPLIT_RE.split(query.upper()) if t]
        code_search = bool(tokens) and all(BookCodeValidator.validate(t) for t in tokens)
        term = query.lower()

        def matches(book: Book) -> bool:
            if genre and book.genre != genre:
                return False
            if not query:
                return True
            if code_search:
                return any(t in book.codes for t in tokens)
            return (
                term in book.title.lower()
                or any(term in c.lower() for c in book.codes)
                or term in str(book.year)
                or term in book.genre.lower()
            )

        books = [b for b in self.state.catalog.records() if matches(b)]

        if sort_by == "title":
            key = lambda b: (clean_title(b.title), b.title)
        elif sort_by == "year":
            key = lambda b: b.year
        else:
            key = lambda b: b.id
        books.sort(key=key, reverse=(order == "desc"))
        # Stable second pass keeps the order within each genre
        books.sort(key=lambda b: GENRE_ORDER.index(b.genre) if b.genre in GENRE_ORDER else len(GENRE_ORDER))
        return books

    def get_statistics(self) -> Dict[str, int]:
        books = self.state.catalog.records()
        return {
            "total_books": sum(b.copies for b in books),
            "unique_titles": len(books),
            "available_books": sum(b.available_copies for b in books),
            "borrowed_books": len(self.state.ledger.open_loans()),
        }

    # ------------------------- Loans ------------------------- #
    def borrow(self, code: str) -> Loan:
        user = self._require_user()
        if user.get("role") == "guest" and not self.state.settings.guest_borrow:
            raise PermissionDenied("Guests cannot borrow books.")
        loan = self.state.ledger.borrow(code, user["username"], self.state.settings.loan_days)
        self._commit(EVENT_BOOKS, EVENT_LOANS)
        logger.info("%s borrowed %s", loan.user_id, loan.book_id)
        return loan

    def return_book(self, loan_id: str) -> Loan:
        loan = self.state.ledger.return_loan(loan_id)
        self._commit(EVENT_BOOKS, EVENT_LOANS)
        logger.info("%s returned %s", loan.user_id, loan.book_id)
        return loan

    def visible_loans(self) -> List[Loan]:
        user = self.state.active_user
        if not user:
            return []
        return self.state.ledger.visible_to(user["username"], user.get("role", ""))

    def export_loans(self, directory: str | Path = ".") -> Path:
        """Write the visible open loans to an .xlsx file in ``directory``.

        Staff get one worksheet per borrower.
        """
        user = self._require_user()
        loans = self.visible_loans()
        if not loans:
            raise NotFound("No open loans to export.")
        per_borrower = user.get("role") == "staff"
        filename = export_filename(user["username"], per_borrower, self.clock.now())
        return export_loans(Path(directory) / filename, loans, per_borrower=per_borrower)

    # ------------------------- Import ------------------------- #
    def import_csv_text(self, text: str) -> ImportResult:
        """Rebuild the whole catalog from the fixed CSV layout."""
        self.require_admin("Reload CSV")
        result = reconcile_csv_rows(
            parse_csv_text(text),
            year=self.state.settings.default_year,
            copies_per_row=settings.csv_copies_per_row,
            header_rows=settings.csv_header_rows,
        )
        self._reapply_open_loans(result.records)
        self.state.catalog.replace_all(result.records)
        self._commit(EVENT_BOOKS)
        self._log_import("CSV reload", result)
        return result

    def import_csv_file(self, path: str | Path) -> ImportResult:
        text = Path(path).read_text(encoding="utf-8-sig")
        return self.import_csv_text(text)

    def import_rows(self, rows) -> ImportResult:
        """Add spreadsheet rows (code, title, optional copies) to the catalog."""
        self.require_admin("Import books")
        result = reconcile_import_rows(
            rows,
            self.state.catalog.records(),
            year=self.state.settings.default_year,
            default_copies=self.state.settings.default_copies,
            header_rows=settings.import_header_rows,
        )
        self.state.catalog.replace_all(result.records)
        self._commit(EVENT_BOOKS)
        self._log_import("Import", result)
        return result

    def import_spreadsheet(self, path: str | Path) -> ImportResult:
        path = Path(path)
        if path.suffix.lower() in (".xlsx", ".xlsm"):
            rows = read_spreadsheet(path)
        else:
            rows = parse_csv_text(path.read_text(encoding="utf-8-sig"))
        return self.import_rows(rows)

    def _reapply_open_loans(self, records: List[Book]) -> None:
        # Copies still on loan are not available in the rebuilt catalog
        by_code = {}
        for book in records:
            for code in book.codes:
                by_code.setdefault(code, book)
        on_loan: Dict[str, int] = {}
        for loan in self.state.ledger.open_loans():
            book = by_code.get(loan.book_id)
            if book is not None:
                on_loan[book.id] = on_loan.get(book.id, 0) + 1
        for book in records:
            count = on_loan.get(book.id, 0)
            if count > book.copies:
                logger.warning("%s has %d copies on loan but only %d in the reload; keeping %d",
                               book.id, count, book.copies, count)
                book.copies = count
            book.available_copies = book.copies - count

    @staticmethod
    def _log_import(label: str, result: ImportResult) -> None:
        logger.info("%s: %d rows loaded, %d errors", label, result.success_count, result.error_count)
        for error in result.errors:
            logger.debug("%s error: %s", label, error)

    # ------------------------- Settings & sync ------------------------- #
    def update_settings(self, **changes) -> CatalogSettings:
        self.require_admin("Change settings")
        self.state.settings.update(**changes)
        self.save()
        self.state.notify(EVENT_SETTINGS)
        return self.state.settings

    async def push_now(self) -> bool:
        self.require_admin("Push to remote")
        return await self.sync.push_now()

    async def pull(self, confirm: Optional[Callable[[str], bool]] = None) -> PullResult:
        """Interactive pull: errors raise, emptying the catalog needs ``confirm``."""
        self.require_admin("Pull from remote")
        return await self.sync.pull(interactive=True, confirm=confirm)

    def start_background_sync(self) -> None:
        """Silent pull now; the administrator also gets the periodic refresh."""
        interval = self.state.settings.auto_update_interval if self.is_admin() else None
        self.sync.start_auto_pull(interval)

    def reset(self) -> None:
        """Forget all local state (catalog, loans, session, settings)."""
        self.require_admin("Reset data")
        # A debounced push would otherwise upload the emptied catalog
        self.sync.cancel_pending()
        database.clear_state()
        self.state.catalog.clear()
        self.state.ledger.clear()
        self.state.users = []
        self.state.active_user = None
        self.state.extra = {}
        self.state.settings = CatalogSettings.from_dict(None)
        self.state.notify(EVENT_BOOKS, EVENT_LOANS, EVENT_SESSION, EVENT_SETTINGS)

    # ------------------------- Persistence ------------------------- #
    def save(self) -> None:
        save_state({
            database.KEY_BOOKS: self.state.catalog.to_list(),
            database.KEY_BORROWED: self.state.ledger.to_list(),
            database.KEY_USERS: self.state.users,
            database.KEY_ACTIVE_USER: self.state.active_user,
            database.KEY_SETTINGS: self.state.settings.to_dict(),
            database.KEY_EXTRA: self.state.extra,
        })

    def _commit(self, *events: str) -> None:
        self.save()
        self.sync.schedule_push()
        self.state.notify(*events)

    def _load_state(self) -> None:
        self.state.settings = CatalogSettings.from_dict(load_state(database.KEY_SETTINGS))
        self.state.catalog.replace_all(self._load_records(database.KEY_BOOKS, Book.from_dict))
        self.state.ledger.replace_all(self._load_records(database.KEY_BORROWED, Loan.from_dict))
        users = load_state(database.KEY_USERS, [])
        self.state.users = users if isinstance(users, list) else []
        active = load_state(database.KEY_ACTIVE_USER)
        self.state.active_user = active if isinstance(active, dict) and active.get("username") else None
        extra = load_state(database.KEY_EXTRA, {})
        self.state.extra = extra if isinstance(extra, dict) else {}

    @staticmethod
    def _load_records(key: str, factory) -> list:
        raw = load_state(key, [])
        if not isinstance(raw, list):
            return []
        records = []
        for item in raw:
            try:
                records.append(factory(item))
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping unreadable %s entry: %s", key, exc)
        return records

    # ------------------------- Lifecycle ------------------------- #
    async def aclose(self) -> None:
        await self.sync.close()

    def close(self) -> None:
        """Release the sync resources from synchronous code (CLI, tests)."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            asyncio.run(self.aclose())
            return
        raise RuntimeError("Library.close() called inside an event loop; use 'await aclose()'")
