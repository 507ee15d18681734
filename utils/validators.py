import re
from datetime import datetime, timedelta
from typing import Optional

from errors import ValidationError
from utils.dates import ensure_utc

EMAIL_RX = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)*$"
)
ID_RX = re.compile(r"[0-9a-f]{32}")

MIN_LOAN_PERIOD = timedelta(days=1)
MAX_LOAN_PERIOD = timedelta(days=14)


class ISBNValidator:
    """ISBN-10 and ISBN-13 checks used when books are catalogued."""

    @staticmethod
    def normalize_isbn(raw: str) -> str:
        if raw is None:
            return ""
        s = re.sub(r"[^0-9Xx]", "", raw)
        return s.upper()

    @staticmethod
    def is_valid_isbn(isbn: str) -> bool:
        if not isbn:
            return False
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            # 1..10 weighted checksum
            total = 0
            for i, ch in enumerate(s[:-1], 1):
                if not ch.isdigit():
                    return False
                total += i * int(ch)
            check = s[-1]
            if check == 'X':
                check_val = 10
            elif check.isdigit():
                check_val = int(check)
            else:
                return False
            return (total + 10 * check_val) % 11 == 0
        elif len(s) == 13 and s.isdigit():
            total = 0
            for i, ch in enumerate(s[:-1]):
                factor = 1 if i % 2 == 0 else 3
                total += factor * int(ch)
            check_val = (10 - (total % 10)) % 10
            return check_val == int(s[-1])
        return False


class TextValidator:
    """Basic text checks for names and titles."""

    @staticmethod
    def validate_title(title: Optional[str]) -> bool:
        if title is None:
            return False
        return bool(title.strip())

    @staticmethod
    def validate_email(email: Optional[str]) -> bool:
        if not email:
            return False
        return EMAIL_RX.match(email) is not None


def is_valid_id(value: Optional[str]) -> bool:
    return value is not None and ID_RX.fullmatch(value) is not None


def validate_id(value: str, location: str = "id") -> str:
    if not is_valid_id(value):
        raise ValidationError(f"{location}: invalid ID {value!r}")
    return value


def validate_due_date(due_date: datetime, now: datetime) -> datetime:
    """Due date must be more than 1 day and less than 14 days from now."""
    due_date = ensure_utc(due_date)
    earliest = now + MIN_LOAN_PERIOD
    latest = now + MAX_LOAN_PERIOD
    if not (earliest < due_date < latest):
        raise ValidationError(
            "Due date must be at least 1 day (after {}) and no more than 14 days (before {}) from today".format(
                earliest.isoformat(timespec="seconds"), latest.isoformat(timespec="seconds")
            )
        )
    return due_date


def validate_copies(copies: int) -> int:
    if copies < 1:
        raise ValidationError("copies must be at least 1")
    return copies
