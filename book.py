from __future__ import annotations

from datetime import datetime, timezone

from utils.validators import BookCodeValidator


def format_timestamp(value: datetime | None) -> str | None:
    """ISO-8601 UTC with millisecond precision and a trailing 'Z'."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(raw) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class Book:
    """One catalog title. All copies sharing the title are merged into it."""

    def __init__(self, id: str, title: str, genre: str | None = None, year: int = 0,
                 copies: int = 1, available_copies: int | None = None,
                 book_ids: list | None = None) -> None:
        self.id = BookCodeValidator.normalize(id)
        self.title = (title or "").strip()
        self.genre = genre or BookCodeValidator.genre_of(self.id)
        self.year = int(year)
        self.copies = int(copies)
        self.available_copies = self.copies if available_copies is None else int(available_copies)
        self.book_ids = [BookCodeValidator.normalize(c) for c in (book_ids or [self.id])]

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.id} - {self.title} ({self.available_copies}/{self.copies})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, title={self.title!r}, copies={self.copies}, available={self.available_copies})"

    @property
    def codes(self) -> list[str]:
        """Primary id plus every merged code, without duplicates."""
        seen = [self.id]
        for code in self.book_ids:
            if code not in seen:
                seen.append(code)
        return seen

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookIds": list(self.book_ids),
            "title": self.title,
            "genre": self.genre,
            "year": self.year,
            "copies": self.copies,
            "availableCopies": self.available_copies,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Spreadsheet rows may carry numbers as strings
        copies = int(data.get("copies") or 0)
        available = data.get("availableCopies", data.get("available_copies"))
        book_ids = data.get("bookIds", data.get("book_ids"))
        if isinstance(book_ids, str):
            book_ids = [c.strip() for c in book_ids.split(",") if c.strip()]
        return Book(
            id=str(data["id"]),
            title=str(data.get("title") or ""),
            genre=data.get("genre"),
            year=int(data.get("year") or 0),
            copies=copies,
            available_copies=copies if available in (None, "") else int(available),
            book_ids=book_ids or None,
        )


class Loan:
    """A borrow record. Created by a borrow, closed once by a return, never deleted."""

    def __init__(self, id: str, book_id: str, book_title: str, user_id: str,
                 borrow_date: datetime, due_date: datetime,
                 returned_at: datetime | None = None) -> None:
        self.id = str(id)
        self.book_id = BookCodeValidator.normalize(book_id)
        self.book_title = book_title
        self.user_id = user_id
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.returned_at = returned_at

    def __repr__(self) -> str:  # pragma: no cover
        return f"Loan(id={self.id!r}, book_id={self.book_id!r}, user_id={self.user_id!r}, open={self.is_open})"

    @property
    def is_open(self) -> bool:
        return self.returned_at is None

    def days_left(self, now: datetime) -> int:
        """Whole days until the due date, rounded up; negative when overdue."""
        seconds = (self.due_date - now).total_seconds()
        days = int(seconds // 86400)
        return days + 1 if seconds % 86400 else days

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "bookTitle": self.book_title,
            "userId": self.user_id,
            "borrowDate": format_timestamp(self.borrow_date),
            "dueDate": format_timestamp(self.due_date),
            "returnedAt": format_timestamp(self.returned_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Loan":
        borrow_date = parse_timestamp(data.get("borrowDate"))
        due_date = parse_timestamp(data.get("dueDate"))
        if borrow_date is None or due_date is None:
            raise ValueError(f"Loan {data.get('id')} is missing its borrow or due date")
        return Loan(
            id=str(data["id"]),
            book_id=str(data["bookId"]),
            book_title=str(data.get("bookTitle") or ""),
            user_id=str(data["userId"]),
            borrow_date=borrow_date,
            due_date=due_date,
            returned_at=parse_timestamp(data.get("returnedAt")),
        )
