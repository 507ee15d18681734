from datetime import datetime, timedelta, timezone

import pytest

from errors import ValidationError
from utils.validators import ISBNValidator, TextValidator, is_valid_id, validate_due_date

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("isbn", ["9780132350884", "978-0-441-17271-9", "0-306-40615-2", "080442957X"])
def test_valid_isbns(isbn):
    assert ISBNValidator.is_valid_isbn(isbn)


@pytest.mark.parametrize("isbn", ["", "9780132350885", "12345", "ABCDEFGHIJ"])
def test_invalid_isbns(isbn):
    assert not ISBNValidator.is_valid_isbn(isbn)


def test_email_and_title():
    assert TextValidator.validate_email("reader@example.org")
    assert not TextValidator.validate_email("reader@")
    assert not TextValidator.validate_title("   ")


def test_id_format():
    assert is_valid_id("a" * 32)
    assert not is_valid_id("A" * 32)
    assert not is_valid_id("a" * 31)
    assert not is_valid_id(None)


def test_naive_due_date_is_treated_as_utc():
    naive = (NOW + timedelta(days=3)).replace(tzinfo=None)
    assert validate_due_date(naive, NOW) == NOW + timedelta(days=3)


def test_due_date_message_mentions_window():
    with pytest.raises(ValidationError, match="at least 1 day"):
        validate_due_date(NOW, NOW)


def test_id_with_trailing_newline_is_rejected():
    assert not is_valid_id("a" * 32 + "\n")
