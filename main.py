import asyncio
import logging
import os
import subprocess
import sys
import webbrowser
from functools import wraps
from typing import Optional

import typer
from rich.console import Console
from rich.prompt import Confirm

from config import CatalogSettings, settings
from exceptions import ConfirmationRequired, LibraryError
from library import Library
from utils.ui_helpers import (
    print_book_detail,
    print_import_result,
    print_list_result,
    print_loans_result,
    print_stats_result,
    set_output_mode,
)

APP_NAME = "Library Catalog CLI"

console = Console()
logger = logging.getLogger(__name__)


def _is_test_env() -> bool:
    return ("PYTEST_CURRENT_TEST" in os.environ) or (os.environ.get("LIB_CLI_TEST_MODE") == "1")


def _run(action):
    """Run ``action(lib)`` on a fresh Library inside an event loop.

    Pending debounced pushes are flushed before the loop ends, so a
    one-shot command still reaches the remote endpoint.
    """
    async def runner():
        lib = Library()
        try:
            result = action(lib)
            if asyncio.iscoroutine(result):
                result = await result
            await lib.sync.flush()
            return result
        finally:
            await lib.aclose()

    return asyncio.run(runner())


def reports_errors(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LibraryError as e:
            print(f"Error: {e}")
        except ValueError as e:
            print(f"Error: {e}")
        except KeyError as e:
            print(f"Error: unknown setting {e}")
    return wrapper


# --- Typer CLI Application ---
app = typer.Typer(help=APP_NAME)
config_app = typer.Typer(help="Show or change catalog settings")
app.add_typer(config_app, name="config")


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
):
    """Global options (output mode, logging)."""
    if output:
        set_output_mode(output)
    level = logging.DEBUG if verbose or settings.debug else getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


# --- Books ---
@app.command("list")
@reports_errors
def cli_list(
    query: str = typer.Option("", "--query", "-q", help="Book codes or a search term"),
    genre: Optional[str] = typer.Option(None, "--genre", "-g", help="Only this genre"),
    sort_by: str = typer.Option("title", "--sort", help="title | id | year"),
    order: str = typer.Option("asc", "--order", help="asc | desc"),
):
    """List books, grouped by genre."""
    books = _run(lambda lib: lib.search_books(query, genre=genre, sort_by=sort_by, order=order))
    print_list_result(books)


@app.command("find")
def cli_find(code: str):
    """Show a book by any of its codes."""
    book = _run(lambda lib: lib.find_book(code))
    if book:
        print_book_detail(book)
    else:
        print(f"Book with code {code.strip().upper()} not found.")


@app.command("next-code")
@reports_errors
def cli_next_code(genre: Optional[str] = typer.Option(None, "--genre", "-g", help="繪本 | 橋梁書 | 文字書")):
    """Suggest the next free book code for a genre."""
    print(_run(lambda lib: lib.suggest_next_code(genre)))


@app.command("add")
@reports_errors
def cli_add(
    code: str,
    title: str,
    year: Optional[int] = typer.Option(None, "--year", "-y"),
    copies: Optional[int] = typer.Option(None, "--copies", "-n"),
):
    """Add a new title (administrator only)."""
    book = _run(lambda lib: lib.add_book(code, title, year=year, copies=copies))
    print(f"Successfully added: {book.id} {book.title}")


@app.command("edit")
@reports_errors
def cli_edit(
    code: str,
    title: Optional[str] = typer.Option(None, "--title", "-t"),
    year: Optional[int] = typer.Option(None, "--year", "-y"),
    copies: Optional[int] = typer.Option(None, "--copies", "-n"),
):
    """Change a title, year or number of copies (administrator only)."""
    book = _run(lambda lib: lib.edit_book(code, title=title, year=year, copies=copies))
    print(f"Updated: {book.id} {book.title} ({book.available_copies}/{book.copies})")


@app.command("remove")
@reports_errors
def cli_remove(code: str):
    """Delete a title that has no copies on loan (administrator only)."""
    book = _run(lambda lib: lib.delete_book(code))
    print(f"Book {book.id} has been removed.")


@app.command("stats")
def cli_stats():
    """Show catalog statistics."""
    print_stats_result(_run(lambda lib: lib.get_statistics()))


# --- Loans ---
@app.command("borrow")
@reports_errors
def cli_borrow(code: str):
    """Borrow a copy as the logged-in user."""
    loan = _run(lambda lib: lib.borrow(code))
    print(f"Borrowed {loan.book_id} {loan.book_title}, due {loan.due_date.date().isoformat()} (loan {loan.id})")


@app.command("return")
@reports_errors
def cli_return(loan_id: str):
    """Return a loan by its id."""
    loan = _run(lambda lib: lib.return_book(loan_id))
    print(f"Returned {loan.book_id} {loan.book_title}.")


@app.command("loans")
def cli_loans():
    """List open loans visible to the logged-in user."""
    def action(lib):
        return lib.visible_loans(), lib.clock.now()

    loans, now = _run(action)
    print_loans_result(loans, now=now)


@app.command("export-loans")
@reports_errors
def cli_export_loans(directory: str = typer.Option(".", "--dir", "-d", help="Target directory")):
    """Export the visible open loans to an .xlsx workbook."""
    path = _run(lambda lib: lib.export_loans(directory))
    print(f"Exported loans to {path}")


# --- Import ---
@app.command("reload-csv")
@reports_errors
def cli_reload_csv(file_path: str):
    """Rebuild the whole catalog from a CSV export (administrator only)."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return
    print_import_result(_run(lambda lib: lib.import_csv_file(file_path)))


@app.command("import")
@reports_errors
def cli_import(file_path: str):
    """Add books from an .xlsx or .csv sheet: code, title, optional copies."""
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return
    print_import_result(_run(lambda lib: lib.import_spreadsheet(file_path)))


# --- Session ---
@app.command("login")
@reports_errors
def cli_login(username: str, role: str = typer.Option("student", "--role", "-r", help="guest | student | staff")):
    """Log in; the session is kept until logout."""
    user = _run(lambda lib: lib.login(username, role))
    print(f"Logged in as {user['username']} ({user['role']})")


@app.command("logout")
def cli_logout():
    _run(lambda lib: lib.logout())
    print("Logged out.")


@app.command("whoami")
def cli_whoami():
    def action(lib):
        return lib.current_user, lib.is_admin()

    user, admin = _run(action)
    if not user:
        print("Not logged in.")
        return
    suffix = ", administrator" if admin else ""
    print(f"{user['username']} ({user['role']}{suffix})")


# --- Sync ---
@app.command("push")
@reports_errors
def cli_push():
    """Push the catalog and loans to the remote endpoint now."""
    if _run(lambda lib: lib.push_now()):
        print("Push completed.")
    else:
        print("Remote sync is not configured.")


@app.command("pull")
@reports_errors
def cli_pull(yes: bool = typer.Option(False, "--yes", "-y", help="Accept an empty remote catalog")):
    """Replace the local catalog and loans with the remote copy."""
    def confirm(message: str) -> bool:
        return yes or Confirm.ask(message, default=False)

    try:
        result = _run(lambda lib: lib.pull(confirm=confirm))
    except ConfirmationRequired as e:
        print(f"Pull cancelled: {e}")
        return
    if result.applied:
        print(f"Pulled {result.books} books and {result.loans} loans.")
    elif result.reason == "disabled":
        print("Remote sync is not configured.")
    else:
        print(f"Pull not applied ({result.reason}).")


# --- Settings & maintenance ---
@config_app.command("show")
def cli_config_show():
    values = _run(lambda lib: lib.state.settings.to_dict())
    for key, value in values.items():
        print(f"{key}: {value}")


@config_app.command("set")
@reports_errors
def cli_config_set(key: str, value: str):
    """Set a setting, e.g. 'loan_days 21' or 'guestBorrow true'."""
    attr = CatalogSettings.field_name(key)
    updated = _run(lambda lib: lib.update_settings(**{attr: value}))
    print(f"{key} = {getattr(updated, attr)}")


@app.command("reset")
@reports_errors
def cli_reset(yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation")):
    """Erase all local data, then reload from the remote endpoint if configured."""
    if not yes and not Confirm.ask("Erase all local data?", default=False):
        print("Reset cancelled.")
        return

    async def action(lib):
        lib.reset()
        return await lib.sync.pull(interactive=False)

    result = _run(action)
    print("Local data cleared.")
    if result.applied:
        print(f"Reloaded {result.books} books and {result.loans} loans from remote.")


@app.command("serve")
def cli_serve(timeout: int = typer.Option(0, "--timeout", help="Seconds to run before exiting (0 = no timeout)")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on {url}")
    if not _is_test_env():
        try:
            webbrowser.open(url)
        except webbrowser.Error as e:
            logger.debug("Could not open a browser: %s", e)
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    try:
        subprocess.run(args, check=False, timeout=timeout or None)
    except subprocess.TimeoutExpired:
        print("Server stopped after timeout.")
    except FileNotFoundError:
        console.print("[bold red]Error:[/] `uvicorn` could not be started. Make sure it is installed.")


if __name__ == "__main__":
    app()
