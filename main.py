import logging
import os
import subprocess
import sys
import webbrowser
from datetime import datetime, timedelta
from typing import List, Optional

import typer

import database
from config import settings
from errors import LibraryError
from filters import BookFilter, Paginator, PatronFilter, Sorter, TransactionFilter
from library import Library
from utils.dates import utcnow
from utils.ui_helpers import (
    print_books,
    print_patrons,
    print_summary,
    print_transactions,
    set_output_mode,
)

APP_NAME = "Circulation Desk CLI"


class LibraryManager:
    """One Library per database file; rebuilt when LIBRARY_DB_FILE changes (per-test databases)."""

    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @staticmethod
    def _current_db() -> str:
        return os.getenv("LIBRARY_DB_FILE") or settings.database_file or database.DATABASE_FILE

    @classmethod
    def get_instance(cls) -> Library:
        current_db = cls._current_db()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = Library(db_file=current_db)
            cls._db_file_snapshot = current_db
        return cls._instance


def _fail(error: Exception) -> None:
    print(f"Error: {error}")
    raise typer.Exit(code=1)


app = typer.Typer(help=APP_NAME)


@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level"),
):
    """Global CLI options (output mode, verbosity)."""
    logging.basicConfig(level=logging.DEBUG if verbose else settings.logging_level())
    if output:
        set_output_mode(output)


@app.command("books")
def cli_books(
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Case-insensitive title search"),
    author: List[str] = typer.Option([], "--author", "-a", help="Match any of these authors"),
    genre: List[str] = typer.Option([], "--genre", "-g", help="Match any of these genres"),
    min_pages: Optional[int] = typer.Option(None, "--min-pages"),
    max_pages: Optional[int] = typer.Option(None, "--max-pages"),
    min_copies: Optional[int] = typer.Option(None, "--min-copies"),
    max_copies: Optional[int] = typer.Option(None, "--max-copies"),
    published_after: Optional[datetime] = typer.Option(None, "--published-after"),
    published_before: Optional[datetime] = typer.Option(None, "--published-before"),
    page: int = typer.Option(0, "--page", help="Page number (0 = all)"),
    page_size: int = typer.Option(settings.default_page_size, "--page-size"),
    sort: str = typer.Option("", "--sort", "-s", help="Sort field, prefix with '-' for descending"),
):
    """List books in the catalog."""
    lib = LibraryManager.get_instance()
    try:
        book_filter = BookFilter(
            title=title, authors=author, genres=genre,
            min_pages=min_pages, max_pages=max_pages,
            min_copies=min_copies, max_copies=max_copies,
            min_published_at=published_after, max_published_at=published_before,
        )
        books, _ = lib.list_books(book_filter, Paginator(page, page_size), Sorter(sort))
    except LibraryError as e:
        _fail(e)
    print_books(books)


@app.command("add-book")
def cli_add_book(
    title: str,
    isbn: str,
    copies: int = typer.Option(1, "--copies", "-c"),
    author: List[str] = typer.Option([], "--author", "-a"),
    publisher: List[str] = typer.Option([], "--publisher", "-p"),
    genre: List[str] = typer.Option([], "--genre", "-g"),
    edition: int = typer.Option(1, "--edition"),
    pages: int = typer.Option(0, "--pages"),
):
    """Catalogue a new book."""
    lib = LibraryManager.get_instance()
    try:
        book = lib.create_book(title, isbn, copies, authors=author, publishers=publisher,
                               genres=genre, edition=edition, pages=pages)
    except LibraryError as e:
        _fail(e)
    print(f"Successfully added: {book.title} (id: {book.id})")


@app.command("patrons")
def cli_patrons(
    name: Optional[str] = typer.Option(None, "--name", "-n"),
    category: Optional[str] = typer.Option(None, "--category"),
    sort: str = typer.Option("", "--sort", "-s"),
):
    """List registered patrons."""
    lib = LibraryManager.get_instance()
    try:
        patrons, _ = lib.list_patrons(PatronFilter(name=name, category=category), sorter=Sorter(sort))
    except LibraryError as e:
        _fail(e)
    print_patrons(patrons)


@app.command("add-patron")
def cli_add_patron(
    name: str,
    email: str,
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True),
    category: str = typer.Option("student", "--category", help="student | teacher"),
):
    """Register a new patron."""
    lib = LibraryManager.get_instance()
    try:
        patron = lib.create_patron(name, email, password, category)
    except LibraryError as e:
        _fail(e)
    print(f"Successfully registered: {patron.name} (id: {patron.id})")


@app.command("borrow")
def cli_borrow(
    patron_id: str,
    book_id: str,
    days: int = typer.Option(7, "--days", "-d", help="Loan period in days"),
    due: Optional[datetime] = typer.Option(None, "--due", help="Explicit due date (overrides --days)"),
    copies: int = typer.Option(1, "--copies", "-c"),
):
    """Lend copies of a book to a patron."""
    lib = LibraryManager.get_instance()
    due_date = due or utcnow() + timedelta(days=days)
    try:
        transaction = lib.borrow_book(patron_id, book_id, due_date, copies)
    except LibraryError as e:
        _fail(e)
    print(f"Borrowed: transaction {transaction.id} due {transaction.due_date.isoformat(timespec='seconds')}")


@app.command("return")
def cli_return(
    patron_id: str,
    book_id: str,
    copies: Optional[int] = typer.Option(None, "--copies", "-c"),
):
    """Return a patron's borrowed copies of a book."""
    lib = LibraryManager.get_instance()
    try:
        message = lib.return_book(patron_id, book_id, copies)
    except LibraryError as e:
        _fail(e)
    print(message)


@app.command("summary")
def cli_summary(patron_id: str):
    """Show a patron with their transactions and outstanding fine."""
    lib = LibraryManager.get_instance()
    try:
        summary = lib.get_patron_summary(patron_id)
    except LibraryError as e:
        _fail(e)
    print_summary(summary)


@app.command("transactions")
def cli_transactions(
    patron_id: Optional[str] = typer.Option(None, "--patron"),
    book_id: Optional[str] = typer.Option(None, "--book"),
    status: Optional[str] = typer.Option(None, "--status", help="borrowed | returned"),
    due_after: Optional[datetime] = typer.Option(None, "--due-after"),
    due_before: Optional[datetime] = typer.Option(None, "--due-before"),
    sort: str = typer.Option("", "--sort", "-s"),
):
    """List transactions."""
    lib = LibraryManager.get_instance()
    try:
        transactions, _ = lib.list_transactions(
            TransactionFilter(patron_id=patron_id, book_id=book_id, status=status,
                              min_due_date=due_after, max_due_date=due_before),
            sorter=Sorter(sort),
        )
    except LibraryError as e:
        _fail(e)
    print_transactions(transactions)


@app.command("serve")
def cli_serve(
    timeout: int = typer.Option(0, "--timeout", help="Seconds to run before shutting down (0 = no timeout)"),
    open_browser: bool = typer.Option(False, "--open", help="Open the API docs in a browser"),
):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    url = f"http://{host}:{port}/docs"
    print(f"Starting API on http://{host}:{port}/")
    if open_browser:
        webbrowser.open(url)

    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if timeout and timeout > 0:
        start_new_session = os.name != "nt"
        proc = subprocess.Popen(args, start_new_session=start_new_session)
        try:
            proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            proc.terminate()
            try:
                proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait(timeout=3)
    else:
        subprocess.run(args)


if __name__ == "__main__":
    app()
