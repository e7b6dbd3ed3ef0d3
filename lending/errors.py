from __future__ import annotations

from typing import Any, Dict, Optional


class LendingError(Exception):
    """Base class for expected, caller-recoverable lending outcomes."""

    code = "LENDING_ERROR"
    entity = "Unknown"

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LendingError, ValueError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str) -> None:
        super().__init__(message, details={"field": field})
        self.field = field


class NotFoundError(LendingError, LookupError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: str) -> None:
        super().__init__(f"{entity} with ID {identifier} not found")
        self.entity = entity
        self.identifier = identifier


class ConflictError(LendingError):
    code = "CONFLICT"


# --- Policy rejections ---

class BorrowingRejected(LendingError):
    """A borrow request refused by the lending policy."""

    entity = "Member"
    field = ""
    constraint = ""
    suggestion = ""

    def __init__(self, message: str) -> None:
        super().__init__(message, details={
            "field": self.field,
            "constraint": self.constraint,
            "suggestion": self.suggestion,
        })


class InactiveMemberError(BorrowingRejected):
    code = "INACTIVE_MEMBER"
    field = "member_status"
    constraint = "INACTIVE_ACCOUNT"
    suggestion = "Contact library staff to reactivate the account"

    def __init__(self) -> None:
        super().__init__("Member account is inactive")


class OutOfStockError(BorrowingRejected):
    code = "OUT_OF_STOCK"
    entity = "Edition"
    field = "availability"
    constraint = "OUT_OF_STOCK"
    suggestion = "Check back later or try a different edition"

    def __init__(self) -> None:
        super().__init__("No copies available for borrowing")


class HasOverdueError(BorrowingRejected):
    code = "HAS_OVERDUE"
    field = "overdue_books"
    constraint = "OVERDUE_PREVENTION"
    suggestion = "Return overdue books before borrowing new ones"

    def __init__(self) -> None:
        super().__init__("Member has overdue books. Please return them first.")


class LimitReachedError(BorrowingRejected):
    code = "LIMIT_REACHED"
    field = "borrowing_limit"
    constraint = "MAX_BORROWINGS"
    suggestion = "Return some books before borrowing new ones"

    def __init__(self, limit: int) -> None:
        super().__init__(f"Member has reached the maximum borrowing limit ({limit} books)")
        self.limit = limit


# --- Lifecycle transitions ---

class InvalidTransitionError(LendingError):
    entity = "Borrowing"


class AlreadyReturnedError(InvalidTransitionError):
    code = "ALREADY_RETURNED"

    def __init__(self) -> None:
        super().__init__("Book has already been returned")


class CannotReturnLostError(InvalidTransitionError):
    code = "CANNOT_RETURN_LOST"

    def __init__(self) -> None:
        super().__init__("Cannot return a lost book")


class CannotMarkReturnedAsLostError(InvalidTransitionError):
    code = "CANNOT_MARK_RETURNED_AS_LOST"

    def __init__(self) -> None:
        super().__init__("Cannot mark returned book as lost")


class AlreadyLostError(InvalidTransitionError):
    code = "ALREADY_LOST"

    def __init__(self) -> None:
        super().__init__("Book is already marked as lost")


# --- Infrastructure ---

class InventoryError(LendingError):
    """An availability adjustment would leave 0 <= available <= stock."""

    code = "INVENTORY_INVARIANT"
    entity = "Edition"


class StorageError(Exception):
    """Opaque storage failure; the enclosing unit of work was rolled back."""

    code = "STORAGE_ERROR"
