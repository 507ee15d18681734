import os
import json
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table
from rich.panel import Panel

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LIB_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False))


def print_books(books: List[Any]) -> None:
    """Print books in the current output mode.
    - plain: 'id  ISBN  Title (borrowed/copies)' lines, or 'No books in library.'
    - json: JSON array of book documents
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in library.")
        return

    if mode == "json":
        _print_json([b.to_dict() for b in books])
    elif mode == "rich":
        table = Table(title="📚 Books", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("ISBN", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Authors", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            table.add_row(b.id, b.isbn, b.title, ", ".join(b.authors), f"{b.available_copies}/{b.copies}")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.id}  {b.isbn}  {b.title} ({b.borrowed_copies}/{b.copies} borrowed)")


def print_patrons(patrons: List[Any]) -> None:
    mode = get_output_mode()

    if not patrons:
        print("No patrons registered.")
        return

    if mode == "json":
        _print_json([p.to_dict() for p in patrons])
    elif mode == "rich":
        table = Table(title="🧑 Patrons", header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Category", style="magenta")
        for p in patrons:
            table.add_row(p.id, p.name, p.email, p.category.kind.value)
        _console.print(table)
    else:
        for p in patrons:
            print(f"{p.id}  {p.name} <{p.email}> [{p.category.kind.value}]")


def print_transactions(transactions: List[Any]) -> None:
    mode = get_output_mode()

    if not transactions:
        print("No transactions found.")
        return

    if mode == "json":
        _print_json([t.to_dict() for t in transactions])
    elif mode == "rich":
        table = Table(title="🔁 Transactions", header_style="bold cyan")
        table.add_column("ID", style="dim", no_wrap=True)
        table.add_column("Patron", no_wrap=True)
        table.add_column("Book", no_wrap=True)
        table.add_column("Copies", justify="right")
        table.add_column("Status", style="magenta")
        table.add_column("Due")
        for t in transactions:
            table.add_row(t.id, t.patron_id, t.book_id, str(t.copies), t.status.value,
                          t.due_date.isoformat(timespec="seconds"))
        _console.print(table)
    else:
        for t in transactions:
            print(f"{t.id}  {t.status.value}  patron={t.patron_id} book={t.book_id} "
                  f"copies={t.copies} due={t.due_date.isoformat(timespec='seconds')}")


def print_summary(summary: Any) -> None:
    """Print a patron summary in the current output mode.
    - plain: patron line, one line per transaction, then 'Total fine: X'
    - json: the summary document
    - rich: Panel plus a fines table
    """
    mode = get_output_mode()
    data: Dict[str, Any] = summary.to_dict()
    patron = summary.patron

    if mode == "json":
        _print_json(data)
    elif mode == "rich":
        content = (
            f"[bold]{patron.name}[/] <{patron.email}>\n"
            f"[bold]Category:[/] {patron.category.kind.value} "
            f"({patron.category.discount_percentage:g}% discount)\n"
            f"[bold]Total fine:[/] {summary.total_fine:.2f}"
        )
        _console.print(Panel.fit(content, title="📊 Patron", border_style="blue"))
        if summary.transactions:
            table = Table(header_style="bold cyan")
            table.add_column("Transaction", style="dim", no_wrap=True)
            table.add_column("Status")
            table.add_column("Due")
            table.add_column("Fine", justify="right")
            for item in summary.transactions:
                t = item.transaction
                table.add_row(t.id, t.status.value, t.due_date.isoformat(timespec="seconds"), f"{item.fine:.2f}")
            _console.print(table)
    else:
        print(f"{patron.name} <{patron.email}> [{patron.category.kind.value}]")
        for item in summary.transactions:
            t = item.transaction
            print(f"  {t.id}  {t.status.value}  fine={item.fine:.2f}")
        print(f"Total fine: {summary.total_fine:.2f}")
