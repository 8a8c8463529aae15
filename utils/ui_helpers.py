import os
import json
from datetime import datetime, timezone
from typing import List, Any, Dict, Optional
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _codes_text(book: Any) -> str:
    extra = [c for c in book.codes if c != book.id]
    return f"{book.id} (+{', '.join(extra)})" if extra else book.id


def print_list_result(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'CODE - Title [genre] available/copies' lines, or 'No books in library.'
    - json: array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("Code", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Genre", style="white")
        table.add_column("Year", justify="right")
        table.add_column("Available", justify="right")
        for b in books:
            style = "green" if b.available_copies > 0 else "red"
            table.add_row(
                _codes_text(b), b.title, b.genre, str(b.year),
                f"[{style}]{b.available_copies}/{b.copies}[/]",
            )
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id} - {b.title} [{b.genre}] {b.available_copies}/{b.copies}")


def print_book_detail(book: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(book.to_dict(), ensure_ascii=False))
        return
    lines = [
        f"Code: {book.id}",
        f"All codes: {', '.join(book.codes)}",
        f"Title: {book.title}",
        f"Genre: {book.genre}",
        f"Year: {book.year}",
        f"Available: {book.available_copies}/{book.copies}",
    ]
    if mode == "rich":
        _console.print(Panel.fit("\n".join(lines), title="📖 Book", border_style="cyan"))
    else:
        print("Book Found")
        for line in lines:
            print(line)


def print_loans_result(loans: List[Any], now: Optional[datetime] = None) -> None:
    """Print open loans with the days left until each due date."""
    mode = get_output_mode()
    now = now or datetime.now(timezone.utc)

    if not loans:
        print("No open loans.")
        return

    if mode == "json":
        print(json.dumps([l.to_dict() for l in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📋 Loans", header_style="bold cyan")
        table.add_column("Loan ID", style="magenta", no_wrap=True)
        table.add_column("Code")
        table.add_column("Title")
        table.add_column("Borrower")
        table.add_column("Due", justify="right")
        for l in loans:
            days = l.days_left(now)
            due = f"[red]{-days} days overdue[/]" if days < 0 else f"{days} days left"
            table.add_row(l.id, l.book_id, l.book_title, l.user_id, due)
        _console.print(table)
    else:
        for l in loans:
            days = l.days_left(now)
            due = f"overdue {-days}d" if days < 0 else f"{days}d left"
            print(f"{l.id} - {l.book_id} {l.book_title} ({l.user_id}, {due})")


def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = {
        "total_books": "Total Books",
        "unique_titles": "Unique Titles",
        "available_books": "Available",
        "borrowed_books": "Borrowed",
    }

    if mode == "json":
        print(json.dumps({k: stats.get(k, 0) for k in labels}, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(k, 0)}" for k, label in labels.items())
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for k, label in labels.items():
            print(f"{label}: {stats.get(k, 0)}")


def print_import_result(result: Any) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps({
            "success_count": result.success_count,
            "error_count": result.error_count,
            "errors": result.errors,
        }, ensure_ascii=False))
        return
    print(f"Imported: {result.success_count} rows, errors: {result.error_count}")
    for error in result.errors:
        print(f"  {error}")
