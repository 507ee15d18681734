"""Per-entity document stores on top of SQLite.

Every store exposes the same five operations: ``get``, ``get_all``,
``insert``, ``update`` and ``delete``. ``update`` is optimistic: the write
only lands if the stored version still equals the version the caller read,
and a miss is reported as ``EditConflictError`` rather than silently ignored.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from book import Book
from database import DEFAULT_TIMEOUT, atomic, get_db_connection, translate_errors
from errors import (
    BookNotFoundError,
    DuplicateEmailError,
    DuplicateIDError,
    DuplicateISBNError,
    DuplicateKeyError,
    EditConflictError,
    NotFoundError,
    PatronNotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from filters import (
    BOOK_SORT_FIELDS,
    PATRON_SORT_FIELDS,
    TRANSACTION_SORT_FIELDS,
    BookFilter,
    Metadata,
    Paginator,
    PatronFilter,
    Sorter,
    TransactionFilter,
    calculate_metadata,
)
from patron import Patron
from transaction import Transaction
from utils.dates import format_timestamp, utcnow
from utils.validators import is_valid_id

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def new_id() -> str:
    return uuid.uuid4().hex


class _Where:
    """Accumulates ``WHERE`` predicates and their parameters."""

    def __init__(self) -> None:
        self.clauses: List[str] = []
        self.params: List[Any] = []

    def eq(self, column: str, value: Any) -> None:
        if value is not None:
            self.clauses.append(f"{column} = ?")
            self.params.append(value)

    def between(self, column: str, low: Any, high: Any) -> None:
        if isinstance(low, datetime) or isinstance(high, datetime):
            low, high = format_timestamp(low), format_timestamp(high)
        if low is not None:
            self.clauses.append(f"{column} >= ?")
            self.params.append(low)
        if high is not None:
            self.clauses.append(f"{column} <= ?")
            self.params.append(high)

    def contains(self, column: str, value: Optional[str]) -> None:
        # case-insensitive substring match
        if value is not None:
            self.clauses.append(f"instr(lower({column}), lower(?)) > 0")
            self.params.append(value)

    def any_of(self, column: str, values: Sequence[str]) -> None:
        # JSON list column shares at least one element with values
        if values:
            marks = ", ".join("?" for _ in values)
            self.clauses.append(f"EXISTS (SELECT 1 FROM json_each({column}) WHERE json_each.value IN ({marks}))")
            self.params.extend(values)

    def sql(self) -> str:
        if not self.clauses:
            return ""
        return " WHERE " + " AND ".join(self.clauses)


def _check_id(value: Optional[str]) -> None:
    if value is not None and not is_valid_id(value):
        raise ValidationError(f"invalid ID: {value!r}")


class _DocumentStore:
    table = ""
    not_found: type = NotFoundError
    sort_columns: Dict[str, str] = {}
    update_fields: Tuple[str, ...] = ()

    def __init__(self, conn: sqlite3.Connection, clock: Clock = utcnow) -> None:
        self.conn = conn
        self.clock = clock

    # --- hooks --------------------------------------------------------- #
    def _where(self, filter) -> _Where:
        raise NotImplementedError

    def _to_row(self, entity) -> Dict[str, Any]:
        raise NotImplementedError

    def _from_row(self, row: sqlite3.Row):
        raise NotImplementedError

    def _duplicate_error(self, message: str) -> DuplicateKeyError:
        if f"{self.table}.id" in message:
            return DuplicateIDError("a resource with this ID already exists")
        return DuplicateKeyError(message)

    # --- helpers ------------------------------------------------------- #
    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with translate_errors():
                return self.conn.execute(sql, params)
        except sqlite3.IntegrityError as e:
            message = str(e)
            if "UNIQUE" in message:
                raise self._duplicate_error(message) from e
            raise ValidationError(f"constraint violated: {message}") from e

    def _first_rowid(self, where: _Where) -> str:
        return f"(SELECT rowid FROM {self.table}{where.sql()} LIMIT 1)"

    # --- operations ---------------------------------------------------- #
    def get(self, filter):
        """Return the first document matching ``filter``."""
        where = self._where(filter)
        row = self._execute(f"SELECT * FROM {self.table}{where.sql()} ORDER BY rowid LIMIT 1", where.params).fetchone()
        if row is None:
            raise self.not_found()
        return self._from_row(row)

    def get_all(self, filter, paginator: Optional[Paginator] = None,
                sorter: Optional[Sorter] = None) -> Tuple[list, Metadata]:
        """Return matching documents and pagination metadata.

        Pagination only applies when both page and page size are positive;
        otherwise every match is returned with zeroed metadata.
        """
        paginator = paginator or Paginator()
        sorter = sorter or Sorter()
        where = self._where(filter)

        order = "rowid"
        resolved = sorter.resolve(tuple(self.sort_columns))
        if resolved:
            column, descending = resolved
            order = f"{self.sort_columns[column]} {'DESC' if descending else 'ASC'}, rowid"

        sql = f"SELECT * FROM {self.table}{where.sql()} ORDER BY {order}"
        params = list(where.params)
        metadata = Metadata()
        if paginator.valid():
            total = self._execute(f"SELECT COUNT(*) FROM {self.table}{where.sql()}", where.params).fetchone()[0]
            metadata = calculate_metadata(total, paginator.page, paginator.page_size)
            sql += " LIMIT ? OFFSET ?"
            params += [paginator.limit(), paginator.offset()]

        rows = self._execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows], metadata

    def insert(self, entity) -> str:
        """Store a new document and return its id; timestamps are set here."""
        _check_id(entity.id)
        original_id = entity.id
        now = self.clock()
        entity.id = entity.id or new_id()
        entity.created_at = now
        entity.updated_at = now
        entity.version = 0
        row = self._to_row(entity)
        columns = ", ".join(row)
        marks = ", ".join("?" for _ in row)
        try:
            self._execute(f"INSERT INTO {self.table} ({columns}) VALUES ({marks})", list(row.values()))
        except Exception:
            entity.id = original_id
            raise
        return entity.id

    def update(self, filter, entity) -> None:
        """Write the whitelisted fields of ``entity`` if its version is still current.

        On success the stored version is incremented by one and the entity's
        ``version`` and ``updated_at`` are refreshed to match.
        """
        where = self._where(replace(filter, version=entity.version))
        now = self.clock()
        row = self._to_row(entity)
        assignments = ", ".join(f"{field} = ?" for field in self.update_fields)
        params = [row[field] for field in self.update_fields]
        params.append(format_timestamp(now))
        params.extend(where.params)
        cursor = self._execute(
            f"UPDATE {self.table} SET {assignments}, updated_at = ?, version = version + 1 "
            f"WHERE rowid = {self._first_rowid(where)}",
            params,
        )
        if cursor.rowcount == 0:
            logger.info(f"Edit conflict on {self.table} {entity.id} at version {entity.version}")
            raise EditConflictError()
        entity.version += 1
        entity.updated_at = now

    def delete(self, filter) -> None:
        where = self._where(filter)
        cursor = self._execute(f"DELETE FROM {self.table} WHERE rowid = {self._first_rowid(where)}", where.params)
        if cursor.rowcount == 0:
            raise self.not_found()


class BookStore(_DocumentStore):
    table = "books"
    not_found = BookNotFoundError
    sort_columns = {name: name for name in BOOK_SORT_FIELDS}
    update_fields = (
        "title", "isbn", "pages", "edition", "published_at",
        "authors", "publishers", "genres", "copies", "borrowed_copies",
    )

    def _where(self, filter: BookFilter) -> _Where:
        _check_id(filter.id)
        where = _Where()
        where.eq("id", filter.id)
        where.contains("title", filter.title)
        where.eq("isbn", filter.isbn)
        where.any_of("authors", filter.authors)
        where.any_of("publishers", filter.publishers)
        where.any_of("genres", filter.genres)
        where.between("pages", filter.min_pages, filter.max_pages)
        where.between("edition", filter.min_edition, filter.max_edition)
        where.between("copies", filter.min_copies, filter.max_copies)
        where.between("borrowed_copies", filter.min_borrowed_copies, filter.max_borrowed_copies)
        where.between("published_at", filter.min_published_at, filter.max_published_at)
        where.between("created_at", filter.min_created_at, filter.max_created_at)
        where.between("updated_at", filter.min_updated_at, filter.max_updated_at)
        where.eq("version", filter.version)
        return where

    def _to_row(self, book: Book) -> Dict[str, Any]:
        return {
            "id": book.id,
            "title": book.title,
            "isbn": book.isbn,
            "authors": json.dumps(book.authors),
            "publishers": json.dumps(book.publishers),
            "genres": json.dumps(book.genres),
            "edition": book.edition,
            "pages": book.pages,
            "published_at": format_timestamp(book.published_at),
            "copies": book.copies,
            "borrowed_copies": book.borrowed_copies,
            "version": book.version,
            "created_at": format_timestamp(book.created_at),
            "updated_at": format_timestamp(book.updated_at),
        }

    def _from_row(self, row: sqlite3.Row) -> Book:
        return Book.from_dict(dict(row))

    def _duplicate_error(self, message: str) -> DuplicateKeyError:
        if "books.isbn" in message:
            return DuplicateISBNError("a book with this ISBN already exists")
        return super()._duplicate_error(message)


class PatronStore(_DocumentStore):
    table = "patrons"
    not_found = PatronNotFoundError
    sort_columns = {
        "category": "json_extract(category, '$.type')",
        "name": "name",
        "email": "email",
    }
    update_fields = ("name", "email", "category", "password_hash", "activated", "permissions")

    def _where(self, filter: PatronFilter) -> _Where:
        _check_id(filter.id)
        where = _Where()
        where.eq("id", filter.id)
        where.contains("name", filter.name)
        where.eq("email", filter.email)
        where.eq("json_extract(category, '$.type')", filter.category)
        where.between("created_at", filter.min_created_at, filter.max_created_at)
        where.between("updated_at", filter.min_updated_at, filter.max_updated_at)
        where.eq("version", filter.version)
        return where

    def _to_row(self, patron: Patron) -> Dict[str, Any]:
        return {
            "id": patron.id,
            "name": patron.name,
            "email": patron.email,
            "category": json.dumps(patron.category.to_dict()),
            "password_hash": patron.password_hash,
            "activated": int(patron.activated),
            "permissions": json.dumps(patron.permissions),
            "version": patron.version,
            "created_at": format_timestamp(patron.created_at),
            "updated_at": format_timestamp(patron.updated_at),
        }

    def _from_row(self, row: sqlite3.Row) -> Patron:
        return Patron.from_dict(dict(row))

    def _duplicate_error(self, message: str) -> DuplicateKeyError:
        if "patrons.email" in message:
            return DuplicateEmailError("a resource with this email address already exists")
        return super()._duplicate_error(message)


class TransactionStore(_DocumentStore):
    table = "transactions"
    not_found = TransactionNotFoundError
    sort_columns = {name: name for name in TRANSACTION_SORT_FIELDS}
    update_fields = ("due_date", "returned_at", "status")

    def _where(self, filter: TransactionFilter) -> _Where:
        _check_id(filter.id)
        where = _Where()
        where.eq("id", filter.id)
        where.eq("patron_id", filter.patron_id)
        where.eq("book_id", filter.book_id)
        where.eq("status", getattr(filter.status, "value", filter.status))
        where.between("borrowed_at", filter.min_borrowed_at, filter.max_borrowed_at)
        where.between("due_date", filter.min_due_date, filter.max_due_date)
        where.between("returned_at", filter.min_returned_at, filter.max_returned_at)
        where.between("created_at", filter.min_created_at, filter.max_created_at)
        where.between("updated_at", filter.min_updated_at, filter.max_updated_at)
        where.eq("version", filter.version)
        return where

    def _to_row(self, transaction: Transaction) -> Dict[str, Any]:
        return {
            "id": transaction.id,
            "patron_id": transaction.patron_id,
            "book_id": transaction.book_id,
            "status": transaction.status.value,
            "copies": transaction.copies,
            "borrowed_at": format_timestamp(transaction.borrowed_at),
            "due_date": format_timestamp(transaction.due_date),
            "returned_at": format_timestamp(transaction.returned_at),
            "version": transaction.version,
            "created_at": format_timestamp(transaction.created_at),
            "updated_at": format_timestamp(transaction.updated_at),
        }

    def _from_row(self, row: sqlite3.Row) -> Transaction:
        return Transaction.from_dict(dict(row))


class UnitOfWork:
    """The three stores bound to one connection."""

    def __init__(self, conn: sqlite3.Connection, clock: Clock = utcnow) -> None:
        self.conn = conn
        self.books = BookStore(conn, clock)
        self.patrons = PatronStore(conn, clock)
        self.transactions = TransactionStore(conn, clock)


@contextmanager
def session(db_file: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT,
            clock: Clock = utcnow) -> Iterator[UnitOfWork]:
    """Stores in autocommit mode; each statement stands alone."""
    conn = get_db_connection(db_file, timeout)
    try:
        yield UnitOfWork(conn, clock)
    finally:
        conn.close()


@contextmanager
def unit_of_work(db_file: Optional[str] = None, timeout: float = DEFAULT_TIMEOUT,
                 clock: Clock = utcnow) -> Iterator[UnitOfWork]:
    """Stores whose writes commit together or not at all."""
    conn = get_db_connection(db_file, timeout)
    try:
        with atomic(conn):
            yield UnitOfWork(conn, clock)
    finally:
        conn.close()
