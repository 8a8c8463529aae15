"""Turn raw tabular rows into merged catalog records.

Both entry points are pure: they take rows (lists of string cells) and
return an :class:`ImportResult`; applying the records is the caller's job.
Import is best-effort: bad rows are reported and skipped, good rows count.
"""

from __future__ import annotations

import copy
import csv
import io
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from openpyxl import Workbook, load_workbook

from book import Book, Loan
from catalog import CatalogStore
from utils.validators import BookCodeValidator

logger = logging.getLogger(__name__)

Row = Sequence[object]


@dataclass
class ImportResult:
    records: List[Book] = field(default_factory=list)
    success_count: int = 0
    error_count: int = 0
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.error_count += 1


def _cell(row: Row, index: int) -> str:
    if index >= len(row) or row[index] is None:
        return ""
    return str(row[index]).strip()


def _reconcile(rows: Iterable[Row], store: CatalogStore, *, header_rows: int, year: int,
               copies_for_row, reserved: Optional[set] = None) -> ImportResult:
    result = ImportResult()
    reserved = reserved or set()
    consumed: set[str] = set()

    for index, row in enumerate(rows):
        if index < header_rows:
            continue
        line = index + 1
        if not row or not _cell(row, 0):
            continue

        raw_code = _cell(row, 0)
        title = _cell(row, 1)

        if not BookCodeValidator.validate(raw_code):
            result.add_error(f"Row {line}: invalid book code ({raw_code})")
            continue
        code = BookCodeValidator.normalize(raw_code)

        if not title:
            logger.debug("Row %s: skipped, empty title (%s)", line, code)
            continue

        if code in reserved:
            result.add_error(f"Row {line}: book code already in catalog ({code})")
            continue
        if code in consumed:
            result.add_error(f"Row {line}: duplicate book code ({code})")
            continue

        store.upsert_merged(code, title, year, copies_for_row(row))
        consumed.add(code)
        result.success_count += 1

    result.records = store.records()
    return result


def reconcile_csv_rows(rows: Iterable[Row], *, year: int, copies_per_row: int = 1,
                       header_rows: int = 4) -> ImportResult:
    """Build a fresh catalog from the fixed CSV layout (one row per physical copy).

    The result replaces the whole catalog.
    """
    return _reconcile(rows, CatalogStore(), header_rows=header_rows, year=year,
                      copies_for_row=lambda row: copies_per_row)


def reconcile_import_rows(rows: Iterable[Row], existing: Iterable[Book], *, year: int,
                          default_copies: int, header_rows: int = 1) -> ImportResult:
    """Merge spreadsheet rows into a copy of ``existing``.

    Column 2 optionally holds the number of copies. Codes already present in
    the catalog are rejected.
    """
    store = CatalogStore(copy.deepcopy(list(existing)))

    def copies_for_row(row: Row) -> int:
        raw = _cell(row, 2)
        try:
            copies = int(float(raw)) if raw else 0
        except ValueError:
            copies = 0
        return copies if copies > 0 else default_copies

    return _reconcile(rows, store, header_rows=header_rows, year=year,
                      copies_for_row=copies_for_row, reserved=store.all_codes())


# ------------------------- Readers ------------------------- #
def parse_csv_text(text: str) -> List[List[str]]:
    """Split CSV text into rows. Blank lines are kept as empty rows so row numbers line up."""
    if text.startswith("\ufeff"):
        text = text[1:]
    return [list(row) for row in csv.reader(io.StringIO(text))]


def _render_cell(value) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def read_spreadsheet(path: str | Path) -> List[List[str]]:
    """Rows of the first worksheet of an .xlsx workbook, as strings."""
    workbook = load_workbook(filename=str(path), read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        return [[_render_cell(v) for v in row] for row in sheet.iter_rows(values_only=True)]
    finally:
        workbook.close()


# ------------------------- Loan export ------------------------- #
LOAN_EXPORT_HEADER = ["Loan ID", "Code", "Title", "Borrower", "Borrow date"]
_SHEET_INVALID_RE = re.compile(r"[\\/:*?\[\]]")


def sanitize_sheet_name(name: str) -> str:
    safe = _SHEET_INVALID_RE.sub(" ", str(name))
    if not safe.strip():
        safe = "Borrower"
    return safe[:31]


def _fill_sheet(sheet, loans: List[Loan]) -> None:
    rows = [
        [loan.id, loan.book_id, loan.book_title, loan.user_id, loan.borrow_date.date().isoformat()]
        for loan in loans
    ]
    sheet.append(LOAN_EXPORT_HEADER)
    for row in rows:
        sheet.append(row)
    for idx, header in enumerate(LOAN_EXPORT_HEADER):
        longest = max([len(header)] + [len(str(r[idx])) for r in rows])
        letter = sheet.cell(row=1, column=idx + 1).column_letter
        sheet.column_dimensions[letter].width = min(max(longest + 2, 8), 40)


def export_loans(path: str | Path, loans: List[Loan], *, per_borrower: bool) -> Path:
    """Write open loans to an .xlsx workbook.

    With ``per_borrower`` each borrower gets their own worksheet.
    """
    path = Path(path)
    workbook = Workbook()
    if per_borrower:
        grouped: Dict[str, List[Loan]] = {}
        for loan in loans:
            grouped.setdefault(loan.user_id, []).append(loan)
        workbook.remove(workbook.active)
        used_names: set[str] = set()
        for user_id, user_loans in grouped.items():
            name = sanitize_sheet_name(user_id)
            suffix = 2
            while name in used_names:
                tail = f" ({suffix})"
                name = sanitize_sheet_name(user_id)[: 31 - len(tail)] + tail
                suffix += 1
            used_names.add(name)
            _fill_sheet(workbook.create_sheet(title=name), user_loans)
    else:
        sheet = workbook.active
        sheet.title = "Loans"
        _fill_sheet(sheet, loans)
    workbook.save(str(path))
    logger.info("Exported %d loans to %s", len(loans), path)
    return path


def export_filename(username: str, per_borrower: bool, today: datetime) -> str:
    date_str = today.date().isoformat()
    if per_borrower:
        return f"loans_all_{date_str}.xlsx"
    return f"loans_{sanitize_sheet_name(username)}_{date_str}.xlsx"
