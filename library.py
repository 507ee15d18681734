import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, List, Optional, Tuple

import bcrypt

import database
from book import Book
from config import CostConfig, settings
from database import initialize_database
from errors import (
    CapacityError,
    InvalidStateError,
    LibraryError,
    NotFoundError,
    TransactionNotFoundError,
    ValidationError,
)
from filters import BookFilter, Metadata, Paginator, PatronFilter, Sorter, TransactionFilter
from fines import FineCalculator, PatronSummary
from patron import Patron, PatronCategory
from store import Clock, UnitOfWork, session, unit_of_work
from transaction import Transaction, TransactionStatus
from utils.dates import ensure_utc, utcnow
from utils.validators import (
    ISBNValidator,
    TextValidator,
    validate_copies,
    validate_due_date,
    validate_id,
)

logger = logging.getLogger(__name__)


class Library:
    """Catalog, patron administration and the borrow/return workflows.

    Every public method opens its own connection, so one ``Library`` can be
    shared between threads. Borrow and return run as a single atomic unit:
    either every document they touch is written or none is.
    """

    def __init__(self, db_file: Optional[str] = None, cost: Optional[CostConfig] = None,
                 clock: Optional[Clock] = None, timeout: Optional[float] = None,
                 password_rounds: Optional[int] = None) -> None:
        self.db_file = db_file or settings.database_file or database.DATABASE_FILE
        self.cost = cost or settings.cost()
        self.clock = clock or utcnow
        self.timeout = timeout if timeout is not None else settings.store_timeout
        self.password_rounds = password_rounds or settings.bcrypt_rounds
        self.fines = FineCalculator(self.cost.overdue_fine)

        # Ensure the tables exist before the first request
        initialize_database(self.db_file, self.timeout)

    def close(self) -> None:
        """Connections are per operation, so there is nothing to release."""
        return None

    @contextmanager
    def _session(self) -> Iterator[UnitOfWork]:
        with session(self.db_file, self.timeout, self.clock) as uow:
            yield uow

    @contextmanager
    def _unit_of_work(self) -> Iterator[UnitOfWork]:
        with unit_of_work(self.db_file, self.timeout, self.clock) as uow:
            yield uow

    # ------------------------- Books ------------------------- #
    def create_book(self, title: str, isbn: str, copies: int = 1, *,
                    authors: Optional[List[str]] = None, publishers: Optional[List[str]] = None,
                    genres: Optional[List[str]] = None, edition: int = 1, pages: int = 0,
                    published_at: Optional[datetime] = None) -> Book:
        """Catalogue a new title. ISBNs are normalised and must be unique."""
        if not TextValidator.validate_title(title):
            raise ValidationError("title must not be empty")
        isbn = ISBNValidator.normalize_isbn(isbn)
        if not ISBNValidator.is_valid_isbn(isbn):
            raise ValidationError(f"invalid ISBN: {isbn!r}")
        if copies < 0:
            raise ValidationError("copies must not be negative")

        book = Book(title=title, isbn=isbn, copies=copies, authors=authors, publishers=publishers,
                    genres=genres, edition=edition, pages=pages, published_at=published_at)
        with self._session() as uow:
            uow.books.insert(book)
        logger.info(f"Book created: {book.id} (ISBN: {book.isbn})")
        return book

    def get_book(self, book_id: str) -> Book:
        validate_id(book_id, "book_id")
        with self._session() as uow:
            return uow.books.get(BookFilter(id=book_id))

    def list_books(self, filter: Optional[BookFilter] = None, paginator: Optional[Paginator] = None,
                   sorter: Optional[Sorter] = None) -> Tuple[List[Book], Metadata]:
        with self._session() as uow:
            return uow.books.get_all(filter or BookFilter(), paginator, sorter)

    def update_book(self, book_id: str, *, title: Optional[str] = None, isbn: Optional[str] = None,
                    copies: Optional[int] = None, authors: Optional[List[str]] = None,
                    publishers: Optional[List[str]] = None, genres: Optional[List[str]] = None,
                    edition: Optional[int] = None, pages: Optional[int] = None,
                    published_at: Optional[datetime] = None) -> Book:
        """Edit bibliographic fields or the total copy count.

        ``borrowed_copies`` is owned by the borrow/return workflows and cannot
        be set here.
        """
        validate_id(book_id, "book_id")
        with self._unit_of_work() as uow:
            book = uow.books.get(BookFilter(id=book_id))
            if title is not None:
                if not TextValidator.validate_title(title):
                    raise ValidationError("title must not be empty")
                book.title = title.strip()
            if isbn is not None:
                isbn = ISBNValidator.normalize_isbn(isbn)
                if not ISBNValidator.is_valid_isbn(isbn):
                    raise ValidationError(f"invalid ISBN: {isbn!r}")
                book.isbn = isbn
            if copies is not None:
                if copies < book.borrowed_copies:
                    raise ValidationError(
                        f"cannot reduce total copies below borrowed copies ({book.borrowed_copies})"
                    )
                book.copies = copies
            if authors is not None:
                book.authors = list(authors)
            if publishers is not None:
                book.publishers = list(publishers)
            if genres is not None:
                book.genres = list(genres)
            if edition is not None:
                book.edition = edition
            if pages is not None:
                book.pages = pages
            if published_at is not None:
                book.published_at = ensure_utc(published_at)
            uow.books.update(BookFilter(id=book_id), book)
        logger.info(f"Book updated: {book.id} (version {book.version})")
        return book

    def delete_book(self, book_id: str) -> None:
        # Open transactions referencing the book are not checked
        validate_id(book_id, "book_id")
        with self._session() as uow:
            uow.books.delete(BookFilter(id=book_id))
        logger.info(f"Book deleted: {book_id}")

    # ------------------------- Patrons ------------------------- #
    def _category(self, kind: str) -> PatronCategory:
        category = PatronCategory(kind)
        category.discount_percentage = self.cost.discounts[category.kind.value]
        return category

    def _hash_password(self, password: str) -> str:
        raw = (password or "").encode("utf-8")
        if len(raw) < 8 or len(raw) > 72:
            raise ValidationError("password must be between 8 and 72 bytes long")
        return bcrypt.hashpw(raw, bcrypt.gensalt(rounds=self.password_rounds)).decode("utf-8")

    def create_patron(self, name: str, email: str, password: str, category: str = "student") -> Patron:
        """Register a patron; the category's discount comes from the cost configuration."""
        if not TextValidator.validate_title(name):
            raise ValidationError("name must not be empty")
        if not TextValidator.validate_email(email):
            raise ValidationError(f"invalid email address: {email!r}")

        patron = Patron(
            name=name,
            email=email,
            category=self._category(category),
            password_hash=self._hash_password(password),
            permissions=list(settings.patron_permissions),
        )
        with self._session() as uow:
            uow.patrons.insert(patron)
        logger.info(f"Patron created: {patron.id} ({patron.category.kind.value})")
        return patron

    def get_patron(self, patron_id: str) -> Patron:
        validate_id(patron_id, "patron_id")
        with self._session() as uow:
            return uow.patrons.get(PatronFilter(id=patron_id))

    def list_patrons(self, filter: Optional[PatronFilter] = None, paginator: Optional[Paginator] = None,
                     sorter: Optional[Sorter] = None) -> Tuple[List[Patron], Metadata]:
        with self._session() as uow:
            return uow.patrons.get_all(filter or PatronFilter(), paginator, sorter)

    def update_patron(self, patron_id: str, *, name: Optional[str] = None, email: Optional[str] = None,
                      password: Optional[str] = None, category: Optional[str] = None) -> Patron:
        validate_id(patron_id, "patron_id")
        if email is not None and not TextValidator.validate_email(email):
            raise ValidationError(f"invalid email address: {email!r}")
        password_hash = self._hash_password(password) if password is not None else None

        with self._unit_of_work() as uow:
            patron = uow.patrons.get(PatronFilter(id=patron_id))
            if name is not None:
                if not TextValidator.validate_title(name):
                    raise ValidationError("name must not be empty")
                patron.name = name.strip()
            if email is not None:
                patron.email = email.strip()
            if category is not None:
                patron.category = self._category(category)
            if password_hash is not None:
                patron.password_hash = password_hash
            uow.patrons.update(PatronFilter(id=patron_id), patron)
        logger.info(f"Patron updated: {patron.id} (version {patron.version})")
        return patron

    def activate_patron(self, patron_id: str) -> Patron:
        validate_id(patron_id, "patron_id")
        with self._unit_of_work() as uow:
            patron = uow.patrons.get(PatronFilter(id=patron_id))
            patron.activated = True
            uow.patrons.update(PatronFilter(id=patron_id), patron)
        logger.info(f"Patron activated: {patron.id}")
        return patron

    def delete_patron(self, patron_id: str) -> None:
        validate_id(patron_id, "patron_id")
        with self._session() as uow:
            uow.patrons.delete(PatronFilter(id=patron_id))
        logger.info(f"Patron deleted: {patron_id}")

    def get_patron_summary(self, patron_id: str) -> PatronSummary:
        """The patron, every one of their transactions with its fine, and the discounted total."""
        validate_id(patron_id, "patron_id")
        with self._session() as uow:
            patron = uow.patrons.get(PatronFilter(id=patron_id))
            transactions, _ = uow.transactions.get_all(TransactionFilter(patron_id=patron.id))
        return self.fines.summarize(patron, transactions, self.clock())

    # ------------------------- Circulation ------------------------- #
    def borrow_book(self, patron_id: str, book_id: str, due_date: datetime, copies: int = 1) -> Transaction:
        """Lend ``copies`` copies of a book to a patron until ``due_date``.

        Raises ValidationError for a bad due date or copy count, Book/Patron
        NotFoundError, CapacityError when the patron already holds the book or
        not enough copies are free, and EditConflictError when the book changed
        underneath us. Nothing is retried.
        """
        validate_id(patron_id, "patron_id")
        validate_id(book_id, "book_id")
        validate_copies(copies)
        now = self.clock()
        due_date = validate_due_date(due_date, now)

        try:
            with self._unit_of_work() as uow:
                book = uow.books.get(BookFilter(id=book_id))
                patron = uow.patrons.get(PatronFilter(id=patron_id))

                if self._open_transaction(uow, patron.id, book.id) is not None:
                    raise CapacityError("the patron already has an open transaction for this book")
                if not book.can_lend(copies):
                    raise CapacityError("not enough copies of the book are available for borrowing")

                transaction = Transaction(
                    patron_id=patron.id,
                    book_id=book.id,
                    due_date=due_date,
                    borrowed_at=now,
                    status=TransactionStatus.BORROWED,
                    copies=copies,
                )
                uow.transactions.insert(transaction)

                book.borrowed_copies += copies
                uow.books.update(BookFilter(id=book.id), book)
        except LibraryError as e:
            logger.warning(f"Borrow of book {book_id} by patron {patron_id} aborted: {e}")
            raise

        logger.info(f"Book {book_id} borrowed by patron {patron_id} ({copies} copies, transaction {transaction.id})")
        return transaction

    def return_book(self, patron_id: str, book_id: str, copies: Optional[int] = None) -> str:
        """Close the patron's open transaction for the book and put its copies back.

        ``copies`` defaults to what the transaction holds; any other value is
        rejected so ``borrowed_copies`` cannot drift.
        """
        validate_id(patron_id, "patron_id")
        validate_id(book_id, "book_id")
        if copies is not None:
            validate_copies(copies)
        now = self.clock()

        try:
            with self._unit_of_work() as uow:
                book = uow.books.get(BookFilter(id=book_id))
                patron = uow.patrons.get(PatronFilter(id=patron_id))

                transaction = self._open_transaction(uow, patron.id, book.id)
                if transaction is None:
                    raise TransactionNotFoundError()
                if copies is not None and copies != transaction.copies:
                    raise ValidationError(
                        f"transaction holds {transaction.copies} copies, cannot return {copies}"
                    )

                transaction.mark_returned(now)
                uow.transactions.update(TransactionFilter(id=transaction.id), transaction)

                book.borrowed_copies -= transaction.copies
                uow.books.update(BookFilter(id=book.id), book)
        except LibraryError as e:
            logger.warning(f"Return of book {book_id} by patron {patron_id} aborted: {e}")
            raise

        returned = transaction.copies
        noun = "copies" if returned > 1 else "copy"
        logger.info(f"Book {book_id} returned by patron {patron_id} (transaction {transaction.id})")
        return f"successfully returned {returned} {noun} of book with ISBN {book.isbn} (id: {book.id})"

    @staticmethod
    def _open_transaction(uow: UnitOfWork, patron_id: str, book_id: str) -> Optional[Transaction]:
        try:
            return uow.transactions.get(TransactionFilter(
                patron_id=patron_id, book_id=book_id, status=TransactionStatus.BORROWED.value,
            ))
        except NotFoundError:
            return None

    # ------------------------- Transactions ------------------------- #
    def get_transaction(self, transaction_id: str) -> Transaction:
        validate_id(transaction_id, "transaction_id")
        with self._session() as uow:
            return uow.transactions.get(TransactionFilter(id=transaction_id))

    def list_transactions(self, filter: Optional[TransactionFilter] = None, paginator: Optional[Paginator] = None,
                          sorter: Optional[Sorter] = None) -> Tuple[List[Transaction], Metadata]:
        with self._session() as uow:
            return uow.transactions.get_all(filter or TransactionFilter(), paginator, sorter)

    def update_transaction(self, transaction_id: str, due_date: Optional[datetime] = None) -> Transaction:
        """Extend (or shorten) the due date of an open transaction."""
        validate_id(transaction_id, "transaction_id")
        now = self.clock()
        if due_date is not None:
            due_date = validate_due_date(due_date, now)

        with self._unit_of_work() as uow:
            transaction = uow.transactions.get(TransactionFilter(id=transaction_id))
            if due_date is not None:
                if transaction.is_returned:
                    raise InvalidStateError(
                        f"Due date cannot be updated because the transaction status is {TransactionStatus.RETURNED.value}"
                    )
                transaction.due_date = due_date
                uow.transactions.update(TransactionFilter(id=transaction_id), transaction)
        return transaction

    def delete_transaction(self, transaction_id: str) -> None:
        validate_id(transaction_id, "transaction_id")
        with self._session() as uow:
            uow.transactions.delete(TransactionFilter(id=transaction_id))
        logger.info(f"Transaction deleted: {transaction_id}")
