"""Query inputs for the entity stores: filters, pagination and sorting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from errors import ValidationError

BOOK_SORT_FIELDS = ("id", "pages", "edition", "copies", "borrowed_copies", "published_at", "title", "isbn")
PATRON_SORT_FIELDS = ("category", "name", "email")
TRANSACTION_SORT_FIELDS = ("patron_id", "book_id", "status", "borrowed_at", "due_date", "returned_at")


@dataclass
class Paginator:
    page: int = 0
    page_size: int = 0

    def valid(self) -> bool:
        return self.page > 0 and self.page_size > 0

    def limit(self) -> int:
        return self.page_size

    def offset(self) -> int:
        return (self.page - 1) * self.page_size


@dataclass
class Sorter:
    """Sort by ``field``, or ``-field`` for descending."""

    field: str = ""

    def resolve(self, safelist: Sequence[str]) -> Optional[Tuple[str, bool]]:
        """Return ``(column, descending)`` or None when no sort was requested."""
        if not self.field:
            return None
        column = self.field[1:] if self.field.startswith("-") else self.field
        if column not in safelist:
            raise ValidationError(f"unsupported sort field: {self.field}")
        return column, self.field.startswith("-")


@dataclass
class Metadata:
    current_page: int = 0
    page_size: int = 0
    first_page: int = 0
    last_page: int = 0
    total_pages: int = 0
    total_records: int = 0

    def to_dict(self) -> dict:
        return {
            "current_page": self.current_page,
            "page_size": self.page_size,
            "first_page": self.first_page,
            "last_page": self.last_page,
            "total_pages": self.total_pages,
            "total_records": self.total_records,
        }


def calculate_metadata(total_records: int, page: int, page_size: int) -> Metadata:
    if total_records == 0:
        return Metadata()
    last_page = (total_records + page_size - 1) // page_size
    return Metadata(
        current_page=page,
        page_size=page_size,
        first_page=1,
        last_page=last_page,
        total_pages=last_page,
        total_records=total_records,
    )


@dataclass
class BookFilter:
    id: Optional[str] = None
    title: Optional[str] = None
    isbn: Optional[str] = None
    authors: List[str] = field(default_factory=list)
    publishers: List[str] = field(default_factory=list)
    genres: List[str] = field(default_factory=list)
    min_pages: Optional[int] = None
    max_pages: Optional[int] = None
    min_edition: Optional[int] = None
    max_edition: Optional[int] = None
    min_copies: Optional[int] = None
    max_copies: Optional[int] = None
    min_borrowed_copies: Optional[int] = None
    max_borrowed_copies: Optional[int] = None
    min_published_at: Optional[datetime] = None
    max_published_at: Optional[datetime] = None
    min_created_at: Optional[datetime] = None
    max_created_at: Optional[datetime] = None
    min_updated_at: Optional[datetime] = None
    max_updated_at: Optional[datetime] = None
    version: Optional[int] = None


@dataclass
class PatronFilter:
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    category: Optional[str] = None
    min_created_at: Optional[datetime] = None
    max_created_at: Optional[datetime] = None
    min_updated_at: Optional[datetime] = None
    max_updated_at: Optional[datetime] = None
    version: Optional[int] = None


@dataclass
class TransactionFilter:
    id: Optional[str] = None
    patron_id: Optional[str] = None
    book_id: Optional[str] = None
    status: Optional[str] = None
    min_borrowed_at: Optional[datetime] = None
    max_borrowed_at: Optional[datetime] = None
    min_due_date: Optional[datetime] = None
    max_due_date: Optional[datetime] = None
    min_returned_at: Optional[datetime] = None
    max_returned_at: Optional[datetime] = None
    min_created_at: Optional[datetime] = None
    max_created_at: Optional[datetime] = None
    min_updated_at: Optional[datetime] = None
    max_updated_at: Optional[datetime] = None
    version: Optional[int] = None
