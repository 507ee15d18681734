from __future__ import annotations

from datetime import datetime
from enum import Enum

from utils.dates import format_timestamp, parse_timestamp


class TransactionStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"


class Transaction:
    """A patron borrowing one or more copies of a book.

    Created as ``borrowed`` by the borrow workflow and moved to ``returned``
    by the return workflow; there is no way back.
    """

    def __init__(self, patron_id: str, book_id: str, due_date: datetime,
                 borrowed_at: datetime | None = None,
                 status: TransactionStatus | str = TransactionStatus.BORROWED,
                 copies: int = 1, returned_at: datetime | None = None,
                 id: str | None = None, version: int = 0,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.patron_id = patron_id
        self.book_id = book_id
        self.status = TransactionStatus(status)
        self.copies = copies
        self.borrowed_at = parse_timestamp(borrowed_at)
        self.due_date = parse_timestamp(due_date)
        self.returned_at = parse_timestamp(returned_at)
        self.version = version
        self.created_at = parse_timestamp(created_at)
        self.updated_at = parse_timestamp(updated_at)

    def __repr__(self) -> str:  # pragma: no cover
        return (f"Transaction(id={self.id!r}, patron_id={self.patron_id!r}, book_id={self.book_id!r}, "
                f"status={self.status.value!r})")

    @property
    def is_returned(self) -> bool:
        return self.status is TransactionStatus.RETURNED

    def mark_returned(self, when: datetime) -> None:
        self.returned_at = when
        self.status = TransactionStatus.RETURNED

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patron_id": self.patron_id,
            "book_id": self.book_id,
            "status": self.status.value,
            "copies": self.copies,
            "borrowed_at": format_timestamp(self.borrowed_at),
            "due_date": format_timestamp(self.due_date),
            "returned_at": format_timestamp(self.returned_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Transaction":
        return Transaction(
            id=data.get("id"),
            patron_id=data["patron_id"],
            book_id=data["book_id"],
            status=data.get("status") or TransactionStatus.BORROWED,
            copies=int(data.get("copies") or 1),
            borrowed_at=data.get("borrowed_at"),
            due_date=data["due_date"],
            returned_at=data.get("returned_at"),
            version=int(data.get("version") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
