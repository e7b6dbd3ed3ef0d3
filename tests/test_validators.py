from datetime import datetime, timedelta, timezone

import pytest

from lending.errors import ValidationError
from lending.models import BorrowingStatus
from lending.validators import (
    DateValidator,
    IdentifierValidator,
    InventoryValidator,
    TextValidator,
    validate_status,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_identifier_validation():
    assert IdentifierValidator.validate("  brw_abc123 ") == "brw_abc123"
    with pytest.raises(ValidationError):
        IdentifierValidator.validate("")
    with pytest.raises(ValidationError):
        IdentifierValidator.validate("bad id; drop table")
    with pytest.raises(ValidationError):
        IdentifierValidator.validate(42)


def test_parse_due_date_accepts_iso_strings():
    due = DateValidator.parse_due_date("2025-07-01T00:00:00Z", NOW)
    assert due == datetime(2025, 7, 1, tzinfo=timezone.utc)
    assert DateValidator.parse_due_date(None, NOW) is None
    assert DateValidator.parse_due_date("", NOW) is None


def test_parse_due_date_naive_is_utc():
    due = DateValidator.parse_due_date(datetime(2025, 7, 1), NOW)
    assert due.tzinfo is not None
    assert due == datetime(2025, 7, 1, tzinfo=timezone.utc)


def test_parse_due_date_rejects_garbage_and_past():
    with pytest.raises(ValidationError) as info:
        DateValidator.parse_due_date("next tuesday", NOW)
    assert info.value.field == "due_date"
    with pytest.raises(ValidationError):
        DateValidator.parse_due_date(NOW - timedelta(days=1), NOW)


def test_clean_notes():
    assert TextValidator.clean_notes("  gift copy ") == "gift copy"
    assert TextValidator.clean_notes("   ") is None
    assert TextValidator.clean_notes(None) is None
    with pytest.raises(ValidationError):
        TextValidator.clean_notes("x" * 1001)


def test_email_and_name():
    assert TextValidator.validate_email(" Ada@Example.com ") == "ada@example.com"
    with pytest.raises(ValidationError):
        TextValidator.validate_email("not-an-email")
    with pytest.raises(ValidationError):
        TextValidator.validate_name("  ")
    with pytest.raises(ValidationError):
        TextValidator.validate_name(None)
    with pytest.raises(ValidationError):
        TextValidator.validate_name(42, "book_title")
    with pytest.raises(ValidationError):
        TextValidator.validate_email(None)
    with pytest.raises(ValidationError):
        TextValidator.validate_email(["ada@example.com"])


def test_inventory_values():
    assert InventoryValidator.validate_price(None) is None
    assert InventoryValidator.validate_price("40") == 40.0
    with pytest.raises(ValidationError):
        InventoryValidator.validate_price(-1)
    for value in ("nan", float("nan"), float("inf"), "-inf"):
        with pytest.raises(ValidationError):
            InventoryValidator.validate_price(value)
    assert InventoryValidator.validate_quantity(3) == 3
    with pytest.raises(ValidationError):
        InventoryValidator.validate_quantity(-1)
    with pytest.raises(ValidationError):
        InventoryValidator.validate_quantity(True)


def test_validate_status():
    assert validate_status("returned") is BorrowingStatus.RETURNED
    with pytest.raises(ValidationError):
        validate_status("MISSING")
