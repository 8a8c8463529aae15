import json
from unittest.mock import MagicMock, patch

from typer.testing import CliRunner

from library import Library
from main import app

runner = CliRunner()

CSV_TEXT = "Library export\nGenerated\n\ncode,title\nA0001,Cat\nA0002,Cat\nB0001,Dog\n"


def test_list_no_books(lib):
    result = runner.invoke(app, ["list"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_requires_admin(lib):
    result = runner.invoke(app, ["add", "A0001", "Cat"])
    assert result.exit_code == 0
    assert "Error:" in result.stdout
    assert "administrator" in result.stdout


def test_login_add_and_list(lib):
    result = runner.invoke(app, ["login", "admin", "--role", "staff"])
    assert "Logged in as admin (staff)" in result.stdout

    result = runner.invoke(app, ["add", "a0001", "Cat", "--copies", "2"])
    assert "Successfully added: A0001 Cat" in result.stdout

    result = runner.invoke(app, ["list"])
    assert "A0001 - Cat [繪本] 2/2" in result.stdout


def test_list_json_output(admin_lib):
    admin_lib.add_book("B0001", "Dog")

    result = runner.invoke(app, ["--output", "json", "list"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout.strip().splitlines()[-1])
    assert payload[0]["id"] == "B0001"
    assert payload[0]["availableCopies"] == 1


def test_find_book(admin_lib):
    admin_lib.import_csv_text(CSV_TEXT)

    result = runner.invoke(app, ["find", "a0002"])
    assert "Book Found" in result.stdout
    assert "Code: A0001" in result.stdout
    assert "All codes: A0001, A0002" in result.stdout

    result = runner.invoke(app, ["find", "C0404"])
    assert "Book with code C0404 not found." in result.stdout


def test_next_code(admin_lib):
    admin_lib.import_csv_text(CSV_TEXT)
    result = runner.invoke(app, ["next-code", "--genre", "繪本"])
    assert result.stdout.strip() == "A0003"


def test_borrow_and_return(admin_lib):
    admin_lib.add_book("A0001", "Cat")
    admin_lib.login("alice", "student")

    result = runner.invoke(app, ["borrow", "A0001"])
    assert "Borrowed A0001 Cat" in result.stdout

    result = runner.invoke(app, ["borrow", "A0001"])
    assert "Error:" in result.stdout

    reopened = Library()
    loan = reopened.visible_loans()[0]
    reopened.close()

    result = runner.invoke(app, ["loans"])
    assert loan.id in result.stdout
    assert "alice" in result.stdout

    result = runner.invoke(app, ["return", loan.id])
    assert "Returned A0001 Cat." in result.stdout
    result = runner.invoke(app, ["loans"])
    assert "No open loans." in result.stdout


def test_remove_book(admin_lib):
    admin_lib.add_book("C0001", "Tree")
    result = runner.invoke(app, ["remove", "C0001"])
    assert "Book C0001 has been removed." in result.stdout

    result = runner.invoke(app, ["remove", "C0001"])
    assert "Error: Book C0001 not found." in result.stdout


def test_edit_book(admin_lib):
    admin_lib.add_book("C0001", "Tree")
    result = runner.invoke(app, ["edit", "C0001", "--title", "Big Tree", "--copies", "3"])
    assert "Updated: C0001 Big Tree (3/3)" in result.stdout


def test_reload_csv_and_stats(admin_lib, tmp_path):
    csv_file = tmp_path / "books.csv"
    csv_file.write_text(CSV_TEXT + "bad,Row\n", encoding="utf-8")

    result = runner.invoke(app, ["reload-csv", str(csv_file)])
    assert "Imported: 3 rows, errors: 1" in result.stdout
    assert "invalid book code (bad)" in result.stdout

    result = runner.invoke(app, ["stats"])
    assert "Total Books: 3" in result.stdout
    assert "Unique Titles: 2" in result.stdout
    assert "Borrowed: 0" in result.stdout


def test_import_missing_file(admin_lib, tmp_path):
    result = runner.invoke(app, ["import", str(tmp_path / "nope.xlsx")])
    assert "File not found" in result.stdout


def test_whoami_and_logout(admin_lib):
    result = runner.invoke(app, ["whoami"])
    assert "admin (staff, administrator)" in result.stdout

    runner.invoke(app, ["logout"])
    result = runner.invoke(app, ["whoami"])
    assert "Not logged in." in result.stdout


def test_config_show_and_set(admin_lib):
    result = runner.invoke(app, ["config", "set", "loanDays", "21"])
    assert "loanDays = 21" in result.stdout

    result = runner.invoke(app, ["config", "show"])
    assert "loanDays: 21" in result.stdout

    result = runner.invoke(app, ["config", "set", "colour", "blue"])
    assert "Error: unknown setting" in result.stdout


def test_push_and_pull_without_remote(admin_lib):
    result = runner.invoke(app, ["push"])
    assert "Remote sync is not configured." in result.stdout
    result = runner.invoke(app, ["pull", "--yes"])
    assert "Remote sync is not configured." in result.stdout


def test_reset_command(admin_lib):
    admin_lib.add_book("A0001", "Cat")
    result = runner.invoke(app, ["reset", "--yes"])
    assert "Local data cleared." in result.stdout

    result = runner.invoke(app, ["list"])
    assert "No books in library." in result.stdout


def test_export_loans_command(admin_lib, tmp_path):
    admin_lib.add_book("A0001", "Cat")
    admin_lib.borrow("A0001")

    result = runner.invoke(app, ["export-loans", "--dir", str(tmp_path)])
    assert "Exported loans to" in result.stdout
    assert list(tmp_path.glob("loans_all_*.xlsx"))


@patch("subprocess.run")
@patch("webbrowser.open")
def test_serve_command(mock_webbrowser_open, mock_subprocess_run, lib):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    mock_subprocess_run.assert_called_once()
    args = mock_subprocess_run.call_args[0][0]
    assert "uvicorn" in args and "api:app" in args
    mock_webbrowser_open.assert_not_called()


def test_push_failure_is_reported(admin_lib, monkeypatch):
    from exceptions import SyncError

    monkeypatch.setattr(Library, "push_now", MagicMock(side_effect=SyncError("Remote endpoint returned HTTP 500")))
    result = runner.invoke(app, ["push"])
    assert "Error: Remote endpoint returned HTTP 500" in result.stdout
