import json

import pytest
from typer.testing import CliRunner

from config import settings
from main import app
from utils.ui_helpers import OUTPUT_MODE_ENV
from conftest import ISBNS

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(db_file, monkeypatch):
    # Point the CLI at the same per-test database as the lib fixture
    monkeypatch.setenv("LIBRARY_DB_FILE", db_file)
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    monkeypatch.setattr(settings, "bcrypt_rounds", 4)


def test_books_empty(lib):
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in library." in result.stdout


def test_add_book_and_list(lib):
    result = runner.invoke(app, ["add-book", "Clean Code", ISBNS[0], "--copies", "2", "--author", "Robert C. Martin"])
    assert result.exit_code == 0
    assert "Successfully added: Clean Code" in result.stdout

    result = runner.invoke(app, ["books"])
    assert f"{ISBNS[0]}  Clean Code (0/2 borrowed)" in result.stdout


def test_add_book_invalid_isbn(lib):
    result = runner.invoke(app, ["add-book", "Nope", "12345"])
    assert result.exit_code == 1
    assert "Error: invalid ISBN" in result.stdout


def test_books_json_output(lib, make_book):
    make_book(copies=3, title="Dune")
    result = runner.invoke(app, ["--output", "json", "books"])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload[0]["title"] == "Dune"
    assert payload[0]["copies"] == 3


def test_books_range_options(lib, make_book):
    make_book(copies=1, title="Slim", pages=90)
    make_book(copies=2, title="Thick", pages=900)

    result = runner.invoke(app, ["books", "--min-pages", "100"])
    assert result.exit_code == 0
    assert "Thick" in result.stdout
    assert "Slim" not in result.stdout

    result = runner.invoke(app, ["books", "--max-copies", "1"])
    assert "Slim" in result.stdout
    assert "Thick" not in result.stdout


def test_add_patron(lib):
    result = runner.invoke(app, ["add-patron", "Ann", "ann@example.com", "--password", "pa55word!",
                                 "--category", "teacher"])
    assert result.exit_code == 0
    assert "Successfully registered: Ann" in result.stdout

    result = runner.invoke(app, ["patrons"])
    assert "Ann <ann@example.com> [teacher]" in result.stdout


def test_borrow_return_and_summary(lib, make_book, make_patron):
    book = make_book(copies=1)
    patron = make_patron()

    result = runner.invoke(app, ["borrow", patron.id, book.id, "--days", "5"])
    assert result.exit_code == 0
    assert "Borrowed: transaction" in result.stdout

    result = runner.invoke(app, ["transactions", "--patron", patron.id])
    assert "borrowed" in result.stdout

    result = runner.invoke(app, ["return", patron.id, book.id])
    assert result.exit_code == 0
    assert f"successfully returned 1 copy of book with ISBN {book.isbn}" in result.stdout

    result = runner.invoke(app, ["summary", patron.id])
    assert result.exit_code == 0
    assert "Total fine: 0.00" in result.stdout


def test_borrow_unavailable(lib, make_book, make_patron):
    book = make_book(copies=1)
    first, second = make_patron(), make_patron()
    assert runner.invoke(app, ["borrow", first.id, book.id]).exit_code == 0

    result = runner.invoke(app, ["borrow", second.id, book.id])
    assert result.exit_code == 1
    assert "not enough copies" in result.stdout


def test_summary_unknown_patron(lib):
    result = runner.invoke(app, ["summary", "0" * 32])
    assert result.exit_code == 1
    assert "could not be found" in result.stdout
