import math
import re
from datetime import datetime
from typing import Any, Optional

from lending.errors import ValidationError
from lending.models import BorrowingStatus, ensure_utc, parse_timestamp

MAX_NOTES_LENGTH = 1000
_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]{1,64}$")
_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class IdentifierValidator:
    """Checks for member, edition and borrowing identifiers."""

    @staticmethod
    def validate(value: Any, field: str = "id") -> str:
        if not isinstance(value, str):
            raise ValidationError(field, f"{field} must be a string")
        s = value.strip()
        if not _ID_PATTERN.match(s):
            raise ValidationError(field, f"{field} is not a valid identifier")
        return s


class DateValidator:

    @staticmethod
    def parse_due_date(value: Any, borrowed_at: datetime) -> Optional[datetime]:
        """Parse an optional due date; naive values are taken as UTC.

        The due date must fall after the borrow time.
        """
        if value is None or value == "":
            return None
        try:
            due = parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise ValidationError("due_date", f"due_date is not an ISO-8601 timestamp: {value!r}") from exc
        if due <= ensure_utc(borrowed_at):
            raise ValidationError("due_date", "due_date must be after the borrow time")
        return due


class TextValidator:

    @staticmethod
    def clean_notes(notes: Optional[str]) -> Optional[str]:
        if notes is None:
            return None
        if not isinstance(notes, str):
            raise ValidationError("notes", "notes must be text")
        t = notes.strip()
        if not t:
            return None
        if len(t) > MAX_NOTES_LENGTH:
            raise ValidationError("notes", f"notes must be at most {MAX_NOTES_LENGTH} characters")
        return t

    @staticmethod
    def validate_name(name: Optional[str], field: str = "name") -> str:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(field, f"{field} must not be empty")
        return name.strip()

    @staticmethod
    def validate_email(email: Optional[str]) -> str:
        if not isinstance(email, str) or not _EMAIL_PATTERN.match(email.strip()):
            raise ValidationError("email", "email address is not valid")
        return email.strip().lower()


class InventoryValidator:

    @staticmethod
    def validate_price(price: Any) -> Optional[float]:
        if price is None:
            return None
        try:
            value = float(price)
        except (TypeError, ValueError) as exc:
            raise ValidationError("price", "price must be a number") from exc
        if not math.isfinite(value):
            raise ValidationError("price", "price must be a finite number")
        if value < 0:
            raise ValidationError("price", "price must not be negative")
        return round(value, 2)

    @staticmethod
    def validate_quantity(quantity: Any, field: str = "stock_quantity") -> int:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(field, f"{field} must be an integer")
        if quantity < 0:
            raise ValidationError(field, f"{field} must not be negative")
        return quantity


def validate_status(status: Any) -> BorrowingStatus:
    try:
        return BorrowingStatus(str(status).upper())
    except ValueError as exc:
        allowed = ", ".join(s.value for s in BorrowingStatus)
        raise ValidationError("status", f"status must be one of {allowed}") from exc
