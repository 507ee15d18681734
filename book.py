from __future__ import annotations

import json
from datetime import datetime

from utils.dates import format_timestamp, parse_timestamp


def _as_list(value) -> list:
    # SQLite hands list columns back as JSON text
    if value is None:
        return []
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return [value] if value else []
    return [str(v) for v in value]


class Book:
    """A catalogued title and how many of its copies are out on loan."""

    def __init__(self, title: str, isbn: str, copies: int = 1, borrowed_copies: int = 0,
                 authors: list | None = None, publishers: list | None = None, genres: list | None = None,
                 edition: int = 1, pages: int = 0, published_at: datetime | None = None,
                 id: str | None = None, version: int = 0,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.isbn = isbn.strip()
        self.copies = copies
        self.borrowed_copies = borrowed_copies
        self.authors = list(authors or [])
        self.publishers = list(publishers or [])
        self.genres = list(genres or [])
        self.edition = edition
        self.pages = pages
        self.published_at = parse_timestamp(published_at)
        self.version = version
        self.created_at = parse_timestamp(created_at)
        self.updated_at = parse_timestamp(updated_at)

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} (ISBN: {self.isbn})"

    def __repr__(self) -> str:  # pragma: no cover
        return f"Book(id={self.id!r}, isbn={self.isbn!r}, copies={self.copies}, borrowed={self.borrowed_copies})"

    @property
    def available_copies(self) -> int:
        return self.copies - self.borrowed_copies

    def can_lend(self, requested: int) -> bool:
        return self.borrowed_copies + requested <= self.copies

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "isbn": self.isbn,
            "authors": self.authors,
            "publishers": self.publishers,
            "genres": self.genres,
            "edition": self.edition,
            "pages": self.pages,
            "published_at": format_timestamp(self.published_at),
            "copies": self.copies,
            "borrowed_copies": self.borrowed_copies,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            isbn=data["isbn"],
            copies=int(data.get("copies") or 0),
            borrowed_copies=int(data.get("borrowed_copies") or 0),
            authors=_as_list(data.get("authors")),
            publishers=_as_list(data.get("publishers")),
            genres=_as_list(data.get("genres")),
            edition=int(data.get("edition") or 0),
            pages=int(data.get("pages") or 0),
            published_at=data.get("published_at"),
            version=int(data.get("version") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
