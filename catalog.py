"""In-memory collection of catalog titles.

The store enforces code uniqueness across every ``id`` and ``bookIds`` entry
and the availability invariant ``0 <= available_copies <= copies``.
Cross-component rules (open loans, permissions) are checked by the
application root before it calls in here.
"""

from __future__ import annotations

import copy
from typing import Dict, Iterable, Iterator, List, Optional

from book import Book
from exceptions import DuplicateCode, InvariantViolation, NotFound
from utils.validators import BookCodeValidator


class CatalogStore:
    def __init__(self, records: Optional[Iterable[Book]] = None) -> None:
        self._books: List[Book] = []
        if records:
            self.replace_all(records)

    def __len__(self) -> int:
        return len(self._books)

    def __iter__(self) -> Iterator[Book]:
        return iter(list(self._books))

    def records(self) -> List[Book]:
        return list(self._books)

    def snapshot(self) -> List[Book]:
        """Deep copies of every record, safe to mutate."""
        return copy.deepcopy(self._books)

    def all_codes(self) -> set[str]:
        codes: set[str] = set()
        for book in self._books:
            codes.update(book.codes)
        return codes

    # ------------------------- Lookup ------------------------- #
    def find_by_code(self, code: str) -> Optional[Book]:
        norm = BookCodeValidator.normalize(code)
        if not norm:
            return None
        for book in self._books:
            if book.id == norm or norm in book.book_ids:
                return book
        return None

    def find_by_title(self, title: str) -> Optional[Book]:
        title = (title or "").strip()
        for book in self._books:
            if book.title == title:
                return book
        return None

    def _require(self, code: str) -> Book:
        book = self.find_by_code(code)
        if book is None:
            raise NotFound(f"Book {code} not found.")
        return book

    # ------------------------- Mutation ------------------------- #
    def upsert_merged(self, code: str, title: str, year: int, copies: int) -> Book:
        """Merge a copy into the record with the same title, or create one."""
        code = BookCodeValidator.normalize(code)
        existing = self.find_by_title(title)
        if existing is not None:
            existing.copies += copies
            existing.available_copies += copies
            if code not in existing.book_ids:
                existing.book_ids.append(code)
            return existing

        book = Book(id=code, title=title, year=year, copies=copies, book_ids=[code])
        self._books.append(book)
        return book

    def insert_distinct(self, record: Book) -> Book:
        taken = self.all_codes()
        for code in record.codes:
            if code in taken:
                raise DuplicateCode(code)
        self._books.append(record)
        return record

    def adjust_availability(self, code: str, delta: int) -> Book:
        book = self._require(code)
        updated = book.available_copies + delta
        if not 0 <= updated <= book.copies:
            raise InvariantViolation(
                f"Available copies for {book.id} would become {updated} (copies: {book.copies})."
            )
        book.available_copies = updated
        return book

    def update_record(self, code: str, *, title: str, year: int, copies: int, open_loans: int) -> Book:
        """Edit a title in place. ``copies`` may not drop below the open loans."""
        book = self._require(code)
        if copies < open_loans:
            raise InvariantViolation(
                f"Copies cannot be lower than the number of open loans ({open_loans})."
            )
        book.title = title.strip()
        book.year = int(year)
        book.copies = int(copies)
        book.available_copies = book.copies - open_loans
        if book.id not in book.book_ids:
            book.book_ids.insert(0, book.id)
        return book

    def remove(self, code: str) -> Book:
        book = self._require(code)
        self._books = [b for b in self._books if b is not book]
        return book

    def replace_all(self, records: Iterable[Book]) -> None:
        self._books = list(records)

    def clear(self) -> None:
        self._books = []

    def to_list(self) -> List[Dict]:
        return [b.to_dict() for b in self._books]
