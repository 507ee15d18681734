"""Overdue fines.

A transaction accrues ``per_day_rate`` for every started day past its due
date. The patron's category discount is applied once, to the summed total,
never per transaction.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List

from patron import Patron
from transaction import Transaction

DAY = timedelta(days=1)


def days_overdue(transaction: Transaction, now: datetime) -> int:
    # status is ignored: a late return keeps counting from its due date
    overdue = now - transaction.due_date
    return math.ceil(overdue / DAY)


def calculate_fine(transaction: Transaction, per_day_rate: float, now: datetime) -> float:
    days = days_overdue(transaction, now)
    if days <= 0:
        return 0.0
    return days * per_day_rate


def apply_discount(total: float, patron: Patron) -> float:
    return round(total * (1 - patron.category.discount()), 2)


@dataclass
class TransactionFine:
    transaction: Transaction
    fine: float

    def to_dict(self) -> dict:
        return {"transaction": self.transaction.to_dict(), "fine": self.fine}


@dataclass
class PatronSummary:
    patron: Patron
    transactions: List[TransactionFine] = field(default_factory=list)
    total_fine: float = 0.0

    def to_dict(self) -> dict:
        return {
            "info": self.patron.to_dict(),
            "transactions": [t.to_dict() for t in self.transactions],
            "total_fine": self.total_fine,
        }


class FineCalculator:
    """Computes per-transaction fines and a patron's discounted balance."""

    def __init__(self, per_day_rate: float) -> None:
        self.per_day_rate = per_day_rate

    def fine(self, transaction: Transaction, now: datetime) -> float:
        return calculate_fine(transaction, self.per_day_rate, now)

    def summarize(self, patron: Patron, transactions: Iterable[Transaction], now: datetime) -> PatronSummary:
        summary = PatronSummary(patron=patron)
        total = 0.0
        for transaction in transactions:
            fine = self.fine(transaction, now)
            summary.transactions.append(TransactionFine(transaction, fine))
            total += fine
        summary.total_fine = apply_discount(total, patron)
        return summary
