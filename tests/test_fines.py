import logging
from datetime import datetime, timedelta, timezone

import pytest

from config import CostConfig, Settings
from errors import ValidationError
from fines import FineCalculator, apply_discount, calculate_fine, days_overdue
from patron import Patron, PatronCategory
from transaction import Transaction

DUE = datetime(2024, 3, 10, 9, 0, tzinfo=timezone.utc)


def _txn(due_date=DUE, **kwargs):
    return Transaction(patron_id="p" * 32, book_id="b" * 32, due_date=due_date,
                       borrowed_at=due_date - timedelta(days=7), **kwargs)


@pytest.mark.parametrize("late, days", [
    (timedelta(0), 0),
    (timedelta(seconds=-1), 0),
    (timedelta(seconds=1), 1),
    (timedelta(days=1), 1),
    (timedelta(days=1, seconds=1), 2),
    (timedelta(days=15), 15),
])
def test_days_overdue_counts_started_days(late, days):
    assert max(days_overdue(_txn(), DUE + late), 0) == days


def test_no_fine_before_due_date():
    assert calculate_fine(_txn(), 10.0, DUE - timedelta(days=3)) == 0.0


def test_fine_per_started_day():
    assert calculate_fine(_txn(), 10.0, DUE + timedelta(days=2, hours=1)) == 30.0


def test_returned_transaction_still_counts_from_due_date():
    txn = _txn()
    txn.mark_returned(DUE + timedelta(days=2))
    assert calculate_fine(txn, 15.0, DUE + timedelta(days=10)) == 150.0


def test_discount_applied_to_total():
    student = Patron("Sam", "sam@example.com", PatronCategory.student(20))
    teacher = Patron("Tess", "tess@example.com", PatronCategory.teacher(33.3))
    assert apply_discount(150.0, student) == 120.0
    assert apply_discount(10.0, teacher) == 6.67


def test_summary_sums_then_discounts():
    patron = Patron("Sam", "sam@example.com", PatronCategory.student(20))
    late = _txn()
    returned_late = _txn(due_date=DUE + timedelta(days=5))
    returned_late.mark_returned(DUE + timedelta(days=6))
    not_due = _txn(due_date=DUE + timedelta(days=12))

    summary = FineCalculator(10.0).summarize(patron, [late, returned_late, not_due], DUE + timedelta(days=10))

    assert [item.fine for item in summary.transactions] == [100.0, 50.0, 0.0]
    assert summary.total_fine == 120.0
    data = summary.to_dict()
    assert data["info"]["email"] == "sam@example.com"
    assert "password_hash" not in data["info"]
    assert len(data["transactions"]) == 3


def test_summary_without_transactions():
    patron = Patron("Tess", "tess@example.com", PatronCategory.teacher(50))
    summary = FineCalculator(1.0).summarize(patron, [], DUE)
    assert summary.total_fine == 0.0
    assert summary.transactions == []


@pytest.mark.parametrize("kwargs", [
    {"student_discount": -1},
    {"teacher_discount": 100.5},
    {"overdue_fine": -0.5},
])
def test_cost_config_rejects_out_of_range(kwargs):
    with pytest.raises(ValidationError):
        CostConfig(**kwargs)


def test_debug_setting_forces_debug_logging():
    assert Settings(debug=True, log_level="WARNING").logging_level() == logging.DEBUG
    assert Settings(debug=False, log_level="warning").logging_level() == logging.WARNING
    assert Settings(debug=False, log_level="bogus").logging_level() == logging.INFO
