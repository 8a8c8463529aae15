import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from book import Book, Loan, format_timestamp
from config import settings
from database import get_db_connection
from exceptions import (
    ConfirmationRequired,
    DuplicateCode,
    LibraryError,
    NotFound,
    PermissionDenied,
    StateError,
    SyncError,
    ValidationError,
)
from library import Library

logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # The database path is read at startup so tests can point it elsewhere
    library = Library(db_file=os.getenv("LIBRARY_DB_FILE"))
    app.state.library = library
    library.start_background_sync()
    try:
        yield
    finally:
        await library.sync.flush()
        await library.aclose()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_library(request: Request) -> Library:
    return request.app.state.library


# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
def _status_for(exc: LibraryError) -> int:
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, PermissionDenied):
        return 403
    if isinstance(exc, DuplicateCode):
        return 409
    if isinstance(exc, ValidationError):
        return 400
    if isinstance(exc, (StateError, ConfirmationRequired)):
        return 409
    if isinstance(exc, SyncError):
        return 502
    return 400


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc)})


# --- Models ---
class BookModel(BaseModel):
    id: str
    book_ids: List[str]
    title: str
    genre: str
    year: int
    copies: int
    available_copies: int


class BookCreateModel(BaseModel):
    code: Optional[str] = Field(default=None, description="Leave empty to use the next free code of the genre")
    title: str
    genre: Optional[str] = Field(default=None, description="Used only when no code is given")
    year: Optional[int] = None
    copies: Optional[int] = Field(default=None, ge=1)


class UpdateBookModel(BaseModel):
    title: Optional[str] = None
    year: Optional[int] = None
    copies: Optional[int] = Field(default=None, ge=0)


class LoanModel(BaseModel):
    id: str
    book_id: str
    book_title: str
    user_id: str
    borrow_date: str
    due_date: str
    returned_at: Optional[str] = None


class BorrowModel(BaseModel):
    code: str


class SessionModel(BaseModel):
    username: str
    role: str = "student"


class SessionOut(BaseModel):
    username: Optional[str] = None
    role: Optional[str] = None
    is_admin: bool = False


class StatsModel(BaseModel):
    total_books: int
    unique_titles: int
    available_books: int
    borrowed_books: int


class CsvImportModel(BaseModel):
    text: str


class RowsImportModel(BaseModel):
    rows: List[List[Optional[str]]]


class ImportResultModel(BaseModel):
    success_count: int
    error_count: int
    errors: List[str]


class SettingsModel(BaseModel):
    loan_days: int
    guest_borrow: bool
    default_copies: int
    default_year: int
    auto_update_interval: int
    remote_url: str


class SettingsUpdateModel(BaseModel):
    loan_days: Optional[int] = Field(default=None, ge=1)
    guest_borrow: Optional[bool] = None
    default_copies: Optional[int] = Field(default=None, ge=1)
    default_year: Optional[int] = None
    auto_update_interval: Optional[int] = Field(default=None, ge=0)
    remote_url: Optional[str] = None


class PullResultModel(BaseModel):
    applied: bool
    reason: str
    books: int = 0
    loans: int = 0
    error: Optional[str] = None


def _book_out(book: Book) -> BookModel:
    return BookModel(
        id=book.id,
        book_ids=book.codes,
        title=book.title,
        genre=book.genre,
        year=book.year,
        copies=book.copies,
        available_copies=book.available_copies,
    )


def _loan_out(loan: Loan) -> LoanModel:
    return LoanModel(
        id=loan.id,
        book_id=loan.book_id,
        book_title=loan.book_title,
        user_id=loan.user_id,
        borrow_date=format_timestamp(loan.borrow_date),
        due_date=format_timestamp(loan.due_date),
        returned_at=format_timestamp(loan.returned_at),
    )


def _settings_out(library: Library) -> SettingsModel:
    s = library.state.settings
    return SettingsModel(
        loan_days=s.loan_days,
        guest_borrow=s.guest_borrow,
        default_copies=s.default_copies,
        default_year=s.default_year,
        auto_update_interval=s.auto_update_interval,
        remote_url=s.remote_url,
    )


# --- Health ---
@app.get("/health")
async def health(library: Library = Depends(get_library)):
    """Lightweight health check: database reachability and sync state."""
    db_ok = True
    try:
        conn = get_db_connection()
        conn.execute("SELECT 1")
        conn.close()
    except Exception:
        logger.exception("Health check could not reach the database")
        db_ok = False
    return {
        "status": "healthy",
        "timestamp": format_timestamp(datetime.now(timezone.utc)),
        "total_books": len(library.list_books()),
        "db": db_ok,
        "sync": {
            "enabled": library.sync.enabled,
            "phase": library.sync.phase.value,
            "in_cooldown": library.sync.in_cooldown(),
        },
    }


# --- Books ---
@app.get("/books", response_model=List[BookModel])
async def list_books(
    q: str = Query("", description="Book codes or a search term"),
    genre: Optional[str] = None,
    sort_by: str = "title",
    order: str = "asc",
    library: Library = Depends(get_library),
):
    try:
        books = library.search_books(q, genre=genre, sort_by=sort_by, order=order)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_book_out(b) for b in books]


@app.get("/books/next-code")
async def next_code(genre: Optional[str] = None, library: Library = Depends(get_library)):
    return {"code": library.suggest_next_code(genre)}


@app.get("/books/{code}", response_model=BookModel)
async def get_book(code: str, library: Library = Depends(get_library)):
    book = library.find_book(code)
    if not book:
        raise HTTPException(status_code=404, detail="Book not found.")
    return _book_out(book)


@app.post("/books", response_model=BookModel, dependencies=[Depends(get_api_key)])
async def create_book(payload: BookCreateModel, library: Library = Depends(get_library)):
    code = payload.code or library.suggest_next_code(payload.genre)
    book = library.add_book(code, payload.title, year=payload.year, copies=payload.copies)
    return _book_out(book)


@app.put("/books/{code}", response_model=BookModel, dependencies=[Depends(get_api_key)])
async def update_book(code: str, payload: UpdateBookModel, library: Library = Depends(get_library)):
    if payload.title is None and payload.year is None and payload.copies is None:
        raise HTTPException(status_code=400, detail="Provide a title, year and/or copies to update.")
    book = library.edit_book(code, title=payload.title, year=payload.year, copies=payload.copies)
    return _book_out(book)


@app.delete("/books/{code}", dependencies=[Depends(get_api_key)])
async def delete_book(code: str, library: Library = Depends(get_library)):
    book = library.delete_book(code)
    return {"message": f"Book {book.id} deleted."}


@app.get("/stats", response_model=StatsModel)
async def stats(library: Library = Depends(get_library)):
    return StatsModel(**library.get_statistics())


# --- Session ---
@app.get("/session", response_model=SessionOut)
async def get_session(library: Library = Depends(get_library)):
    user = library.current_user or {}
    return SessionOut(username=user.get("username"), role=user.get("role"), is_admin=library.is_admin())


@app.post("/session", response_model=SessionOut, dependencies=[Depends(get_api_key)])
async def login(payload: SessionModel, library: Library = Depends(get_library)):
    user = library.login(payload.username, payload.role)
    if library.is_admin():
        library.start_background_sync()
    return SessionOut(username=user["username"], role=user["role"], is_admin=library.is_admin())


@app.delete("/session", dependencies=[Depends(get_api_key)])
async def logout(library: Library = Depends(get_library)):
    library.logout()
    return {"message": "Logged out."}


# --- Loans ---
@app.get("/loans", response_model=List[LoanModel])
async def list_loans(library: Library = Depends(get_library)):
    return [_loan_out(l) for l in library.visible_loans()]


@app.post("/loans", response_model=LoanModel, dependencies=[Depends(get_api_key)])
async def borrow(payload: BorrowModel, library: Library = Depends(get_library)):
    return _loan_out(library.borrow(payload.code))


@app.post("/loans/{loan_id}/return", response_model=LoanModel, dependencies=[Depends(get_api_key)])
async def return_loan(loan_id: str, library: Library = Depends(get_library)):
    return _loan_out(library.return_book(loan_id))


# --- Import ---
@app.post("/import/csv", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
async def import_csv(payload: CsvImportModel, library: Library = Depends(get_library)):
    result = library.import_csv_text(payload.text)
    return ImportResultModel(success_count=result.success_count, error_count=result.error_count, errors=result.errors)


@app.post("/import/rows", response_model=ImportResultModel, dependencies=[Depends(get_api_key)])
async def import_rows(payload: RowsImportModel, library: Library = Depends(get_library)):
    rows = [["" if cell is None else cell for cell in row] for row in payload.rows]
    result = library.import_rows(rows)
    return ImportResultModel(success_count=result.success_count, error_count=result.error_count, errors=result.errors)


# --- Settings & sync ---
@app.get("/settings", response_model=SettingsModel)
async def get_settings(library: Library = Depends(get_library)):
    return _settings_out(library)


@app.put("/settings", response_model=SettingsModel, dependencies=[Depends(get_api_key)])
async def update_settings(payload: SettingsUpdateModel, library: Library = Depends(get_library)):
    library.update_settings(**payload.model_dump(exclude_none=True))
    return _settings_out(library)


@app.post("/sync/push", dependencies=[Depends(get_api_key)])
async def sync_push(library: Library = Depends(get_library)):
    pushed = await library.push_now()
    return {"pushed": pushed}


@app.post("/sync/pull", response_model=PullResultModel, dependencies=[Depends(get_api_key)])
async def sync_pull(
    force: bool = Query(False, description="Accept an empty remote catalog"),
    library: Library = Depends(get_library),
):
    confirm = (lambda _message: True) if force else None
    result = await library.pull(confirm=confirm)
    return PullResultModel(
        applied=result.applied, reason=result.reason, books=result.books, loans=result.loans, error=result.error
    )
