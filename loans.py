from __future__ import annotations

from datetime import timedelta
from typing import Iterable, List, Optional

from book import Loan
from catalog import CatalogStore
from exceptions import (
    AlreadyBorrowed,
    AlreadyReturned,
    NoCopiesAvailable,
    NotFound,
)
from utils.clock import SystemClock

STAFF_ROLE = "staff"


class LoanLedger:
    """Borrow records plus the matching availability bookkeeping on the catalog."""

    def __init__(self, catalog: CatalogStore, clock=None, loans: Optional[Iterable[Loan]] = None) -> None:
        self.catalog = catalog
        self.clock = clock or SystemClock()
        self._loans: List[Loan] = list(loans or [])

    def __len__(self) -> int:
        return len(self._loans)

    def loans(self) -> List[Loan]:
        return list(self._loans)

    def find(self, loan_id: str) -> Optional[Loan]:
        loan_id = str(loan_id)
        for loan in self._loans:
            if loan.id == loan_id:
                return loan
        return None

    def open_loans(self) -> List[Loan]:
        return [l for l in self._loans if l.is_open]

    def open_loans_for(self, code: str) -> int:
        """Open loans on the record owning ``code``, matched by any of its codes."""
        book = self.catalog.find_by_code(code)
        codes = book.codes if book else [code.strip().upper()]
        return sum(1 for l in self._loans if l.is_open and l.book_id in codes)

    def visible_to(self, user_id: str, role: str) -> List[Loan]:
        if role == STAFF_ROLE:
            return self.open_loans()
        return [l for l in self._loans if l.is_open and l.user_id == user_id]

    def borrow(self, code: str, user_id: str, loan_period_days: int) -> Loan:
        book = self.catalog.find_by_code(code)
        if book is None:
            raise NotFound(f"Book {code} not found.")
        if book.available_copies <= 0:
            raise NoCopiesAvailable(f"All copies of '{book.title}' are on loan.")
        for loan in self._loans:
            if loan.is_open and loan.book_id in book.codes and loan.user_id == user_id:
                raise AlreadyBorrowed(f"{user_id} already has '{book.title}' on loan.")

        now = self.clock.now()
        loan = Loan(
            id=self._next_loan_id(now),
            book_id=book.id,
            book_title=book.title,
            user_id=user_id,
            borrow_date=now,
            due_date=now + timedelta(days=loan_period_days),
        )
        # Availability first: if it fails the loan is never recorded
        self.catalog.adjust_availability(book.id, -1)
        self._loans.append(loan)
        return loan

    def return_loan(self, loan_id: str) -> Loan:
        loan = self.find(loan_id)
        if loan is None:
            raise NotFound(f"Loan {loan_id} not found.")
        if not loan.is_open:
            raise AlreadyReturned(f"Loan {loan_id} was already returned.")

        book = self.catalog.find_by_code(loan.book_id)
        if book is not None:
            self.catalog.adjust_availability(book.id, 1)
        loan.returned_at = self.clock.now()
        return loan

    def replace_all(self, loans: Iterable[Loan]) -> None:
        self._loans = list(loans)

    def clear(self) -> None:
        self._loans = []

    def to_list(self) -> List[dict]:
        return [l.to_dict() for l in self._loans]

    def _next_loan_id(self, now) -> str:
        taken = {l.id for l in self._loans}
        candidate = int(now.timestamp() * 1000)
        while str(candidate) in taken:
            candidate += 1
        return str(candidate)
