from datetime import datetime, timedelta, timezone

import pytest

from book import Book
from errors import (
    BookNotFoundError,
    DuplicateEmailError,
    DuplicateISBNError,
    EditConflictError,
    PatronNotFoundError,
    ValidationError,
)
from filters import BookFilter, Paginator, PatronFilter, Sorter, TransactionFilter
from patron import Patron, PatronCategory
from store import session, unit_of_work
from conftest import ISBNS


@pytest.fixture
def stores(lib, clock):
    with session(lib.db_file, clock=clock) as uow:
        yield uow


def _book(i, **kwargs):
    return Book(title=kwargs.pop("title", f"Title {i}"), isbn=ISBNS[i], **kwargs)


def test_insert_assigns_id_and_timestamps(stores, clock):
    book = _book(0, copies=3)
    book_id = stores.books.insert(book)

    assert len(book_id) == 32
    assert book.created_at == clock.now
    stored = stores.books.get(BookFilter(id=book_id))
    assert stored.title == "Title 0"
    assert stored.copies == 3
    assert stored.version == 0


def test_insert_duplicate_isbn(stores):
    stores.books.insert(_book(0))
    with pytest.raises(DuplicateISBNError):
        stores.books.insert(Book(title="Other", isbn=ISBNS[0]))
    assert len(stores.books.get_all(BookFilter())[0]) == 1


def test_insert_duplicate_email(stores):
    stores.patrons.insert(Patron("Ann", "ann@example.com", PatronCategory.student()))
    with pytest.raises(DuplicateEmailError):
        stores.patrons.insert(Patron("Ann Again", "ann@example.com", PatronCategory.teacher()))


def test_get_missing(stores):
    with pytest.raises(BookNotFoundError):
        stores.books.get(BookFilter(id="0" * 32))
    with pytest.raises(PatronNotFoundError):
        stores.patrons.get(PatronFilter(email="nobody@example.com"))


def test_get_rejects_malformed_id(stores):
    with pytest.raises(ValidationError):
        stores.books.get(BookFilter(id="not-an-id"))


def test_update_increments_version(stores, clock):
    book = _book(0, copies=2)
    stores.books.insert(book)
    clock.advance(minutes=5)

    book.title = "Renamed"
    stores.books.update(BookFilter(id=book.id), book)

    assert book.version == 1
    stored = stores.books.get(BookFilter(id=book.id))
    assert stored.title == "Renamed"
    assert stored.version == 1
    assert stored.updated_at == clock.now
    assert stored.created_at < stored.updated_at


def test_stale_update_is_rejected(stores):
    book = _book(0, copies=2)
    stores.books.insert(book)

    first = stores.books.get(BookFilter(id=book.id))
    second = stores.books.get(BookFilter(id=book.id))

    first.copies = 5
    stores.books.update(BookFilter(id=book.id), first)

    second.copies = 9
    with pytest.raises(EditConflictError):
        stores.books.update(BookFilter(id=book.id), second)

    stored = stores.books.get(BookFilter(id=book.id))
    assert stored.copies == 5
    assert stored.version == 1
    assert second.version == 0


def test_update_check_constraint(stores):
    book = _book(0, copies=1)
    stores.books.insert(book)
    book.borrowed_copies = 2
    with pytest.raises(ValidationError):
        stores.books.update(BookFilter(id=book.id), book)


def test_delete(stores):
    book = _book(0)
    stores.books.insert(book)
    stores.books.delete(BookFilter(id=book.id))
    with pytest.raises(BookNotFoundError):
        stores.books.delete(BookFilter(id=book.id))


def test_get_all_without_pagination_returns_everything(stores):
    for i in range(5):
        stores.books.insert(_book(i))

    books, metadata = stores.books.get_all(BookFilter(), Paginator(0, 2))

    assert len(books) == 5
    assert metadata.total_records == 0
    assert metadata.current_page == 0


def test_get_all_paginates(stores):
    for i in range(5):
        stores.books.insert(_book(i))

    books, metadata = stores.books.get_all(BookFilter(), Paginator(3, 2), Sorter("title"))

    assert [b.title for b in books] == ["Title 4"]
    assert metadata.to_dict() == {
        "current_page": 3,
        "page_size": 2,
        "first_page": 1,
        "last_page": 3,
        "total_pages": 3,
        "total_records": 5,
    }


def test_sorting(stores):
    stores.books.insert(_book(0, title="Bravo", pages=300))
    stores.books.insert(_book(1, title="alpha", pages=100))
    stores.books.insert(_book(2, title="Charlie", pages=200))

    books, _ = stores.books.get_all(BookFilter(), sorter=Sorter("-pages"))
    assert [b.pages for b in books] == [300, 200, 100]

    with pytest.raises(ValidationError):
        stores.books.get_all(BookFilter(), sorter=Sorter("password"))


def test_filters(stores):
    stores.books.insert(_book(0, title="Dune", authors=["Frank Herbert"], genres=["sf"]))
    stores.books.insert(_book(1, title="Dune Messiah", authors=["Frank Herbert"], genres=["sf", "classic"]))
    stores.books.insert(_book(2, title="Emma", authors=["Jane Austen"], genres=["classic"]))

    by_title, _ = stores.books.get_all(BookFilter(title="dune"))
    assert {b.title for b in by_title} == {"Dune", "Dune Messiah"}

    by_genre, _ = stores.books.get_all(BookFilter(genres=["classic", "poetry"]))
    assert {b.title for b in by_genre} == {"Dune Messiah", "Emma"}

    by_author, _ = stores.books.get_all(BookFilter(authors=["Jane Austen"], title="dune"))
    assert by_author == []


def test_numeric_range_filters_are_inclusive(stores):
    stores.books.insert(_book(0, pages=100, copies=1))
    stores.books.insert(_book(1, pages=200, copies=4, borrowed_copies=2, edition=2))
    stores.books.insert(_book(2, pages=300, copies=6, borrowed_copies=6, edition=3))

    def titles(**kwargs):
        books, _ = stores.books.get_all(BookFilter(**kwargs), sorter=Sorter("pages"))
        return [b.title for b in books]

    assert titles(min_pages=200, max_pages=300) == ["Title 1", "Title 2"]
    assert titles(min_pages=200, max_pages=200) == ["Title 1"]
    assert titles(max_pages=99) == []
    assert titles(min_copies=4) == ["Title 1", "Title 2"]
    assert titles(max_edition=2) == ["Title 0", "Title 1"]
    assert titles(min_borrowed_copies=1, max_borrowed_copies=2) == ["Title 1"]


def test_timestamp_range_filters(stores, clock):
    first = stores.books.insert(_book(0))
    clock.advance(microseconds=5)
    second = stores.books.insert(_book(1))
    middle = clock.now
    clock.advance(seconds=1)
    third = stores.books.insert(_book(2))

    def ids(**kwargs):
        books, _ = stores.books.get_all(BookFilter(**kwargs))
        return {b.id for b in books}

    # a whole-second bound still orders before its microsecond neighbours
    start = middle - timedelta(microseconds=5)
    assert ids(min_created_at=start, max_created_at=start) == {first}
    assert ids(min_created_at=middle) == {second, third}
    assert ids(max_created_at=middle) == {first, second}

    # bounds given in another offset are compared in UTC
    local = middle.astimezone(timezone(timedelta(hours=2)))
    assert ids(min_created_at=local, max_created_at=local) == {second}


def test_published_at_range(stores):
    stores.books.insert(_book(0, published_at=datetime(1965, 8, 1, tzinfo=timezone.utc)))
    stores.books.insert(_book(1, published_at=datetime(2008, 8, 1, tzinfo=timezone.utc)))
    stores.books.insert(_book(2))

    books, _ = stores.books.get_all(BookFilter(min_published_at=datetime(2000, 1, 1)))
    assert [b.title for b in books] == ["Title 1"]


def test_transaction_due_date_range(lib, clock, make_book, make_patron):
    patron = make_patron()
    soon = lib.borrow_book(patron.id, make_book().id, clock.now + timedelta(days=2))
    later = lib.borrow_book(patron.id, make_book().id, clock.now + timedelta(days=9))
    lib.return_book(patron.id, soon.book_id)

    due, _ = lib.list_transactions(TransactionFilter(max_due_date=soon.due_date))
    assert [t.id for t in due] == [soon.id]

    due, _ = lib.list_transactions(TransactionFilter(min_due_date=clock.now + timedelta(days=3)))
    assert [t.id for t in due] == [later.id]

    returned, _ = lib.list_transactions(TransactionFilter(min_returned_at=clock.now, max_returned_at=clock.now))
    assert [t.id for t in returned] == [soon.id]


def test_patron_category_filter_and_sort(stores):
    stores.patrons.insert(Patron("Tess", "tess@example.com", PatronCategory.teacher(50)))
    stores.patrons.insert(Patron("Sam", "sam@example.com", PatronCategory.student(20)))

    teachers, _ = stores.patrons.get_all(PatronFilter(category="teacher"))
    assert [p.name for p in teachers] == ["Tess"]
    assert teachers[0].category == PatronCategory.teacher(50)

    ordered, _ = stores.patrons.get_all(PatronFilter(), sorter=Sorter("category"))
    assert [p.name for p in ordered] == ["Sam", "Tess"]


def test_unit_of_work_rolls_back(lib, clock):
    with pytest.raises(RuntimeError):
        with unit_of_work(lib.db_file, clock=clock) as uow:
            uow.books.insert(_book(0))
            raise RuntimeError("boom")

    with session(lib.db_file) as uow:
        assert uow.books.get_all(BookFilter())[0] == []
