import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable controlling CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LENDING_CLI_OUTPUT"

_console = Console()


def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode


def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()


def _money(value: Any) -> str:
    return "-" if value is None else f"{value:.2f}"


def print_borrowing(borrowing: Any) -> None:
    mode = get_output_mode()
    data = borrowing.to_dict()
    if mode == "json":
        print(json.dumps(data, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{k}:[/] {v if v is not None else '-'}" for k, v in data.items())
        _console.print(Panel.fit(content, title=f"Borrowing {borrowing.id}", border_style="cyan"))
    else:
        print(f"{borrowing.id} [{borrowing.status.value}] member={borrowing.member_id} "
              f"edition={borrowing.edition_id} due={data['due_date']} fine={_money(borrowing.fine_amount)}")


def print_borrowings(borrowings: List[Any], empty_message: str = "No borrowings.") -> None:
    """Print borrowings in the current output mode.
    - plain: one line per borrowing, or the empty message
    - json: JSON array of records
    - rich: Rich table
    """
    mode = get_output_mode()

    if not borrowings:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in borrowings], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Borrowings", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Status")
        table.add_column("Member")
        table.add_column("Edition")
        table.add_column("Due")
        table.add_column("Fine", justify="right")
        for b in borrowings:
            table.add_row(b.id, b.status.value, b.member_id, b.edition_id,
                          b.due_date.date().isoformat(), _money(b.fine_amount))
        _console.print(table)
    else:
        for b in borrowings:
            print_borrowing(b)


def print_members(members: List[Any]) -> None:
    mode = get_output_mode()
    if not members:
        print("No members.")
        return
    if mode == "json":
        print(json.dumps([m.to_dict() for m in members], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Members", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Name")
        table.add_column("Email")
        table.add_column("Active")
        for m in members:
            table.add_row(m.id, m.name, m.email, "yes" if m.active else "no")
        _console.print(table)
    else:
        for m in members:
            state = "active" if m.active else "inactive"
            print(f"{m.id} {m.name} <{m.email}> [{state}]")


def print_editions(editions: List[Any]) -> None:
    mode = get_output_mode()
    if not editions:
        print("No editions.")
        return
    if mode == "json":
        print(json.dumps([e.to_dict() for e in editions], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="Editions", header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title")
        table.add_column("Format")
        table.add_column("Available", justify="right")
        table.add_column("Price", justify="right")
        for e in editions:
            table.add_row(e.id, e.book_title, e.format or "-",
                          f"{e.available_quantity}/{e.stock_quantity}", _money(e.price))
        _console.print(table)
    else:
        for e in editions:
            print(f"{e.id} {e.book_title} available={e.available_quantity}/{e.stock_quantity} "
                  f"price={_money(e.price)}")


def print_stats_result(stats: Dict[str, Any]) -> None:
    mode = get_output_mode()
    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
        return
    lines = [
        ("Total Borrowings", stats.get("total_borrowings", 0)),
        ("Active", stats.get("active_borrowings", 0)),
        ("Overdue", stats.get("overdue_borrowings", 0)),
        ("Returned", stats.get("returned_borrowings", 0)),
        ("Lost", stats.get("lost_borrowings", 0)),
        ("Total Fines", _money(stats.get("total_fines", 0.0))),
    ]
    if mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {value}" for label, value in lines)
        _console.print(Panel.fit(content, title="Lending Stats", border_style="blue"))
    else:
        for label, value in lines:
            print(f"{label}: {value}")
