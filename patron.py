from __future__ import annotations

import json
from datetime import datetime
from enum import Enum

from errors import ValidationError
from utils.dates import format_timestamp, parse_timestamp


class CategoryKind(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"


class PatronCategory:
    """Student or teacher, each carrying its own discount percentage.

    Persisted as a sub-document ``{"type": ..., "discount_percentage": ...}``.
    """

    __slots__ = ("kind", "discount_percentage")

    def __init__(self, kind: CategoryKind | str, discount_percentage: float = 0.0) -> None:
        try:
            self.kind = CategoryKind(kind)
        except ValueError:
            raise ValidationError(f"unknown patron category: {kind!r}") from None
        self.discount_percentage = float(discount_percentage)

    @classmethod
    def student(cls, discount_percentage: float = 0.0) -> "PatronCategory":
        return cls(CategoryKind.STUDENT, discount_percentage)

    @classmethod
    def teacher(cls, discount_percentage: float = 0.0) -> "PatronCategory":
        return cls(CategoryKind.TEACHER, discount_percentage)

    def discount(self) -> float:
        """Discount as a fraction; not clamped to [0, 1]."""
        return self.discount_percentage / 100

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PatronCategory):
            return NotImplemented
        return self.kind == other.kind and self.discount_percentage == other.discount_percentage

    def __repr__(self) -> str:  # pragma: no cover
        return f"PatronCategory({self.kind.value!r}, {self.discount_percentage})"

    def to_dict(self) -> dict:
        return {"type": self.kind.value, "discount_percentage": self.discount_percentage}

    @staticmethod
    def from_dict(data: dict | str) -> "PatronCategory":
        if isinstance(data, str):
            data = json.loads(data)
        return PatronCategory(data["type"], data.get("discount_percentage", 0.0))


class Patron:
    """A registered library member."""

    def __init__(self, name: str, email: str, category: PatronCategory,
                 password_hash: str | None = None, activated: bool = False,
                 permissions: list | None = None, id: str | None = None, version: int = 0,
                 created_at: datetime | None = None, updated_at: datetime | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip()
        self.category = category
        self.password_hash = password_hash
        self.activated = bool(activated)
        self.permissions = list(permissions or [])
        self.version = version
        self.created_at = parse_timestamp(created_at)
        self.updated_at = parse_timestamp(updated_at)

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} <{self.email}>"

    def to_dict(self) -> dict:
        # password hash, permissions and version stay internal
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "category": self.category.to_dict(),
            "activated": self.activated,
        }

    @staticmethod
    def from_dict(data: dict) -> "Patron":
        permissions = data.get("permissions")
        if isinstance(permissions, str):
            permissions = json.loads(permissions)
        return Patron(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            category=PatronCategory.from_dict(data["category"]),
            password_hash=data.get("password_hash"),
            activated=bool(data.get("activated")),
            permissions=permissions,
            version=int(data.get("version") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
