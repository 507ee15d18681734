import os
from datetime import datetime, timedelta, timezone

import pytest

from config import CostConfig
from library import Library

# Valid ISBN-13s for test books
ISBNS = ["9780132350884", "9780441172719", "9780590353427", "9781590282410", "9781491991732"]


class FixedClock:
    """Deterministic clock; tests move time with ``advance``."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def cost():
    return CostConfig(overdue_fine=10.0, student_discount=20.0, teacher_discount=50.0)


@pytest.fixture
def db_file(tmp_path, request):
    # A unique database file for each test
    return str(tmp_path / f"test_{request.node.name}.db")


@pytest.fixture
def lib(db_file, cost, clock):
    lib = Library(db_file=db_file, cost=cost, clock=clock, timeout=5, password_rounds=4)
    yield lib
    lib.close()
    if os.path.exists(db_file):
        os.remove(db_file)


@pytest.fixture
def make_book(lib):
    counter = iter(range(len(ISBNS)))

    def _make(copies: int = 1, title: str = None, **kwargs):
        index = next(counter)
        return lib.create_book(title or f"Book {index}", ISBNS[index], copies, **kwargs)

    return _make


@pytest.fixture
def make_patron(lib):
    counter = iter(range(1000))

    def _make(category: str = "student", name: str = None):
        index = next(counter)
        return lib.create_patron(name or f"Patron {index}", f"patron{index}@example.com", "pa55word!", category)

    return _make
