from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any


class BorrowingStatus(str, Enum):
    BORROWED = "BORROWED"
    RETURNED = "RETURNED"
    LOST = "LOST"

    @property
    def is_terminal(self) -> bool:
        return self is not BorrowingStatus.BORROWED


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_timestamp(value: Any) -> datetime | None:
    """Accept datetimes or ISO-8601 strings from storage; naive values are UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Member:
    """A library member who may borrow editions while active."""

    def __init__(self, member_id: str, name: str, email: str, active: bool = True,
                 created_at: datetime | None = None) -> None:
        self.id = member_id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.active = bool(active)
        self.created_at = created_at

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Member(id={self.id!r}, email={self.email!r}, active={self.active})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "active": self.active,
            "created_at": format_timestamp(self.created_at),
        }

    @staticmethod
    def from_dict(data: dict) -> "Member":
        return Member(
            member_id=data["id"],
            name=data["name"],
            email=data["email"],
            active=bool(data.get("active", True)),
            created_at=parse_timestamp(data.get("created_at")),
        )


class Edition:
    """The lendable copy pool of one published format of a book."""

    def __init__(self, edition_id: str, book_title: str, stock_quantity: int,
                 available_quantity: int | None = None, price: float | None = None,
                 format: str | None = None) -> None:
        self.id = edition_id
        self.book_title = book_title.strip()
        self.format = format
        self.price = price
        self.stock_quantity = stock_quantity
        self.available_quantity = stock_quantity if available_quantity is None else available_quantity

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return (f"Edition(id={self.id!r}, available={self.available_quantity}/"
                f"{self.stock_quantity})")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "book_title": self.book_title,
            "format": self.format,
            "price": self.price,
            "stock_quantity": self.stock_quantity,
            "available_quantity": self.available_quantity,
        }

    @staticmethod
    def from_dict(data: dict) -> "Edition":
        price = data.get("price")
        return Edition(
            edition_id=data["id"],
            book_title=data["book_title"],
            format=data.get("format"),
            price=float(price) if price is not None else None,
            stock_quantity=int(data["stock_quantity"]),
            available_quantity=int(data["available_quantity"]),
        )


class Borrowing:
    """One loan of an edition copy to a member.

    Created in BORROWED; RETURNED and LOST are terminal. The record only
    triggers edition counter changes, it does not own them.
    """

    def __init__(self, borrowing_id: str, member_id: str, edition_id: str,
                 borrowed_at: datetime, due_date: datetime,
                 status: BorrowingStatus = BorrowingStatus.BORROWED,
                 returned_at: datetime | None = None, fine_amount: float | None = None,
                 notes: str | None = None) -> None:
        self.id = borrowing_id
        self.member_id = member_id
        self.edition_id = edition_id
        self.borrowed_at = ensure_utc(borrowed_at)
        self.due_date = ensure_utc(due_date)
        self.status = BorrowingStatus(status)
        self.returned_at = ensure_utc(returned_at) if returned_at else None
        self.fine_amount = fine_amount
        self.notes = notes

    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return f"Borrowing(id={self.id!r}, status={self.status.value})"

    def is_overdue(self, now: datetime) -> bool:
        return self.status is BorrowingStatus.BORROWED and self.due_date < ensure_utc(now)

    def append_note(self, text: str) -> None:
        # Annotations accumulate; earlier notes are never replaced.
        self.notes = f"{self.notes} - {text}" if self.notes else text

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "edition_id": self.edition_id,
            "borrowed_at": format_timestamp(self.borrowed_at),
            "due_date": format_timestamp(self.due_date),
            "returned_at": format_timestamp(self.returned_at),
            "fine_amount": self.fine_amount,
            "status": self.status.value,
            "notes": self.notes,
        }

    @staticmethod
    def from_dict(data: dict) -> "Borrowing":
        fine = data.get("fine_amount")
        return Borrowing(
            borrowing_id=data["id"],
            member_id=data["member_id"],
            edition_id=data["edition_id"],
            borrowed_at=parse_timestamp(data["borrowed_at"]),
            due_date=parse_timestamp(data["due_date"]),
            status=BorrowingStatus(data.get("status", BorrowingStatus.BORROWED.value)),
            returned_at=parse_timestamp(data.get("returned_at")),
            fine_amount=float(fine) if fine is not None else None,
            notes=data.get("notes"),
        )
