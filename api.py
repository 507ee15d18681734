import logging
import os
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Security
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, Field

from config import settings
from database import get_db_connection
from errors import (
    CapacityError,
    DuplicateKeyError,
    EditConflictError,
    InvalidStateError,
    LibraryError,
    NotFoundError,
    StoreTimeoutError,
    ValidationError,
)
from filters import BookFilter, Paginator, PatronFilter, Sorter, TransactionFilter
from library import Library
from utils.dates import format_timestamp, utcnow

logging.basicConfig(level=settings.logging_level())
logger = logging.getLogger(__name__)

# LIBRARY_DB_FILE is re-read here so a reload picks up a per-test database
library = Library(db_file=os.getenv("LIBRARY_DB_FILE") or settings.database_file)

app = FastAPI(title=settings.app_name, version=settings.app_version)

# --- Security ---
api_key_header = APIKeyHeader(name="X-API-Key")


def get_api_key(api_key: str = Security(api_key_header)):
    """Dependency that checks the API key on mutating endpoints."""
    if api_key == settings.api_key:
        return api_key
    raise HTTPException(status_code=403, detail="Could not validate credentials")


# --- Error mapping ---
# most specific first: DuplicateKeyError and ValidationError are both ValueErrors
_STATUS_BY_ERROR = (
    (NotFoundError, 404),
    (DuplicateKeyError, 409),
    (EditConflictError, 409),
    (CapacityError, 409),
    (ValidationError, 422),
    (InvalidStateError, 422),
    (StoreTimeoutError, 504),
)


@app.exception_handler(LibraryError)
async def library_error_handler(request: Request, exc: LibraryError):
    status = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 500)
    if status == 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
        detail = "the server encountered a problem and could not process your request"
    else:
        detail = str(exc)
    return JSONResponse(status_code=status, content={"detail": detail})


# --- Models ---
class BookCreateModel(BaseModel):
    title: str
    isbn: str
    copies: int = Field(default=1, ge=0)
    authors: List[str] = Field(default_factory=list)
    publishers: List[str] = Field(default_factory=list)
    genres: List[str] = Field(default_factory=list)
    edition: int = Field(default=1, ge=1)
    pages: int = Field(default=0, ge=0)
    published_at: Optional[datetime] = None


class BookUpdateModel(BaseModel):
    title: Optional[str] = None
    isbn: Optional[str] = None
    copies: Optional[int] = Field(default=None, ge=0)
    authors: Optional[List[str]] = None
    publishers: Optional[List[str]] = None
    genres: Optional[List[str]] = None
    edition: Optional[int] = Field(default=None, ge=1)
    pages: Optional[int] = Field(default=None, ge=0)
    published_at: Optional[datetime] = None


class PatronCreateModel(BaseModel):
    name: str
    email: str
    password: str
    category: str = "student"


class PatronUpdateModel(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    category: Optional[str] = None


class BorrowModel(BaseModel):
    patron_id: str
    book_id: str
    due_date: datetime
    copies: int = 1


class ReturnModel(BaseModel):
    patron_id: str
    book_id: str
    copies: Optional[int] = None


class TransactionUpdateModel(BaseModel):
    due_date: Optional[datetime] = None


def _page(page: int, page_size: int) -> Paginator:
    return Paginator(page=page, page_size=page_size)


# --- Health ---
@app.get("/health")
def health():
    """Light health endpoint: one round trip to the database."""
    db_ok = True
    try:
        conn = get_db_connection(library.db_file, timeout=1)
        try:
            conn.execute("SELECT 1")
        finally:
            conn.close()
    except LibraryError:
        db_ok = False
    return {
        "status": "available" if db_ok else "degraded",
        "timestamp": format_timestamp(utcnow()),
        "system_info": {"app": settings.app_name, "version": settings.app_version},
        "db": db_ok,
    }


# --- Books ---
@app.get("/books")
def list_books(
    title: Optional[str] = Query(None),
    isbn: Optional[str] = Query(None),
    authors: List[str] = Query([]),
    publishers: List[str] = Query([]),
    genres: List[str] = Query([]),
    min_pages: Optional[int] = Query(None, ge=0),
    max_pages: Optional[int] = Query(None, ge=0),
    min_edition: Optional[int] = Query(None, ge=0),
    max_edition: Optional[int] = Query(None, ge=0),
    min_copies: Optional[int] = Query(None, ge=0),
    max_copies: Optional[int] = Query(None, ge=0),
    min_borrowed_copies: Optional[int] = Query(None, ge=0),
    max_borrowed_copies: Optional[int] = Query(None, ge=0),
    min_published_at: Optional[datetime] = Query(None),
    max_published_at: Optional[datetime] = Query(None),
    min_created_at: Optional[datetime] = Query(None),
    max_created_at: Optional[datetime] = Query(None),
    page: int = Query(1, ge=0),
    page_size: int = Query(settings.default_page_size, ge=0, le=settings.max_page_size),
    sort: str = Query(""),
):
    books, metadata = library.list_books(
        BookFilter(
            title=title, isbn=isbn, authors=authors, publishers=publishers, genres=genres,
            min_pages=min_pages, max_pages=max_pages,
            min_edition=min_edition, max_edition=max_edition,
            min_copies=min_copies, max_copies=max_copies,
            min_borrowed_copies=min_borrowed_copies, max_borrowed_copies=max_borrowed_copies,
            min_published_at=min_published_at, max_published_at=max_published_at,
            min_created_at=min_created_at, max_created_at=max_created_at,
        ),
        _page(page, page_size),
        Sorter(sort),
    )
    return {"books": [b.to_dict() for b in books], "metadata": metadata.to_dict()}


@app.post("/books", status_code=201, dependencies=[Depends(get_api_key)])
def create_book(payload: BookCreateModel):
    book = library.create_book(
        payload.title,
        payload.isbn,
        payload.copies,
        authors=payload.authors,
        publishers=payload.publishers,
        genres=payload.genres,
        edition=payload.edition,
        pages=payload.pages,
        published_at=payload.published_at,
    )
    return {"book": book.to_dict()}


@app.get("/books/{book_id}")
def get_book(book_id: str):
    return {"book": library.get_book(book_id).to_dict()}


@app.patch("/books/{book_id}", dependencies=[Depends(get_api_key)])
def update_book(book_id: str, update: BookUpdateModel):
    book = library.update_book(book_id, **update.model_dump(exclude_none=True))
    return {"book": book.to_dict()}


@app.delete("/books/{book_id}", dependencies=[Depends(get_api_key)])
def delete_book(book_id: str):
    library.delete_book(book_id)
    return {"message": "book successfully deleted"}


# --- Patrons ---
@app.get("/patrons")
def list_patrons(
    name: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    min_created_at: Optional[datetime] = Query(None),
    max_created_at: Optional[datetime] = Query(None),
    page: int = Query(1, ge=0),
    page_size: int = Query(settings.default_page_size, ge=0, le=settings.max_page_size),
    sort: str = Query(""),
):
    patrons, metadata = library.list_patrons(
        PatronFilter(
            name=name, email=email, category=category,
            min_created_at=min_created_at, max_created_at=max_created_at,
        ),
        _page(page, page_size),
        Sorter(sort),
    )
    return {"patrons": [p.to_dict() for p in patrons], "metadata": metadata.to_dict()}


@app.post("/patrons", status_code=201, dependencies=[Depends(get_api_key)])
def create_patron(payload: PatronCreateModel):
    patron = library.create_patron(payload.name, payload.email, payload.password, payload.category)
    return {"patron": patron.to_dict()}


@app.get("/patrons/{patron_id}")
def get_patron(patron_id: str):
    """Patron details together with every transaction and the discounted fine total."""
    return {"patron": library.get_patron_summary(patron_id).to_dict()}


@app.patch("/patrons/{patron_id}", dependencies=[Depends(get_api_key)])
def update_patron(patron_id: str, update: PatronUpdateModel):
    patron = library.update_patron(patron_id, **update.model_dump(exclude_none=True))
    return {"patron": patron.to_dict()}


@app.post("/patrons/{patron_id}/activate", dependencies=[Depends(get_api_key)])
def activate_patron(patron_id: str):
    return {"patron": library.activate_patron(patron_id).to_dict()}


@app.delete("/patrons/{patron_id}", dependencies=[Depends(get_api_key)])
def delete_patron(patron_id: str):
    library.delete_patron(patron_id)
    return {"message": "patron successfully deleted"}


# --- Transactions ---
@app.get("/transactions")
def list_transactions(
    patron_id: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    min_borrowed_at: Optional[datetime] = Query(None),
    max_borrowed_at: Optional[datetime] = Query(None),
    min_due_date: Optional[datetime] = Query(None),
    max_due_date: Optional[datetime] = Query(None),
    min_returned_at: Optional[datetime] = Query(None),
    max_returned_at: Optional[datetime] = Query(None),
    min_created_at: Optional[datetime] = Query(None),
    max_created_at: Optional[datetime] = Query(None),
    page: int = Query(1, ge=0),
    page_size: int = Query(settings.default_page_size, ge=0, le=settings.max_page_size),
    sort: str = Query(""),
):
    transactions, metadata = library.list_transactions(
        TransactionFilter(
            patron_id=patron_id, book_id=book_id, status=status,
            min_borrowed_at=min_borrowed_at, max_borrowed_at=max_borrowed_at,
            min_due_date=min_due_date, max_due_date=max_due_date,
            min_returned_at=min_returned_at, max_returned_at=max_returned_at,
            min_created_at=min_created_at, max_created_at=max_created_at,
        ),
        _page(page, page_size),
        Sorter(sort),
    )
    return {"transactions": [t.to_dict() for t in transactions], "metadata": metadata.to_dict()}


@app.post("/transactions/borrow", status_code=201, dependencies=[Depends(get_api_key)])
def borrow_book(payload: BorrowModel):
    transaction = library.borrow_book(payload.patron_id, payload.book_id, payload.due_date, payload.copies)
    return {"transaction": transaction.to_dict()}


@app.post("/transactions/return", dependencies=[Depends(get_api_key)])
def return_book(payload: ReturnModel):
    return {"message": library.return_book(payload.patron_id, payload.book_id, payload.copies)}


@app.get("/transactions/{transaction_id}")
def get_transaction(transaction_id: str):
    return {"transaction": library.get_transaction(transaction_id).to_dict()}


@app.patch("/transactions/{transaction_id}", dependencies=[Depends(get_api_key)])
def update_transaction(transaction_id: str, update: TransactionUpdateModel):
    transaction = library.update_transaction(transaction_id, due_date=update.due_date)
    return {"transaction": transaction.to_dict()}


@app.delete("/transactions/{transaction_id}", dependencies=[Depends(get_api_key)])
def delete_transaction(transaction_id: str):
    library.delete_transaction(transaction_id)
    return {"message": "transaction successfully deleted"}
