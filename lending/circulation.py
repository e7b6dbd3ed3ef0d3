from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from lending.clock import SystemClock
from lending.config import LendingPolicy
from lending.errors import (
    AlreadyLostError,
    AlreadyReturnedError,
    CannotMarkReturnedAsLostError,
    CannotReturnLostError,
    ConflictError,
    NotFoundError,
)
from lending.fines import overdue_fine, replacement_cost
from lending.ledger import InventoryLedger
from lending.models import Borrowing, BorrowingStatus, Edition, Member
from lending.policy import BorrowingPolicy
from lending.repository import Repository
from lending.validators import (
    DateValidator,
    IdentifierValidator,
    InventoryValidator,
    TextValidator,
    validate_status,
)


class CirculationService:
    """Borrowing lifecycle: BORROWED -> RETURNED | LOST.

    Every transition runs as one unit of work on the repository together
    with its inventory adjustment, so a failure leaves no partial effects.
    """

    def __init__(self, repository: Repository, clock=None, policy: Optional[LendingPolicy] = None) -> None:
        self.repository = repository
        self.clock = clock or SystemClock()
        self.policy = policy or LendingPolicy()
        self.eligibility = BorrowingPolicy(repository, self.clock, self.policy)
        self.ledger = InventoryLedger(repository)

    # ------------------------- Lifecycle ------------------------- #
    def borrow(self, member_id: str, edition_id: str, due_date: Any = None,
               notes: Optional[str] = None) -> Borrowing:
        member_id = IdentifierValidator.validate(member_id, "member_id")
        edition_id = IdentifierValidator.validate(edition_id, "edition_id")
        now = self.clock.now()
        due = DateValidator.parse_due_date(due_date, now)
        notes = TextValidator.clean_notes(notes)
        if due is None:
            due = self.due_date_for(now)

        def unit() -> Borrowing:
            # Evaluated inside the unit of work so the checks and the
            # reservation see the same edition row.
            self.eligibility.check(member_id, edition_id)
            self.ledger.reserve(edition_id)
            return self.repository.create_borrowing(member_id, edition_id, now, due, notes)

        return self.repository.run_atomic(unit)

    def return_borrowing(self, borrowing_id: str) -> Borrowing:
        borrowing_id = IdentifierValidator.validate(borrowing_id, "borrowing_id")

        def unit() -> Borrowing:
            borrowing = self._require_borrowing(borrowing_id)
            if borrowing.status.is_terminal:
                if borrowing.status is BorrowingStatus.RETURNED:
                    raise AlreadyReturnedError()
                raise CannotReturnLostError()

            now = self.clock.now()
            borrowing.status = BorrowingStatus.RETURNED
            borrowing.returned_at = now
            borrowing.fine_amount = overdue_fine(borrowing.due_date, now, self.policy.daily_fine_rate)
            self.repository.update_borrowing(borrowing)
            self.ledger.release(borrowing.edition_id)
            return borrowing

        return self.repository.run_atomic(unit)

    def mark_lost(self, borrowing_id: str) -> Borrowing:
        """Close a loan as LOST and charge the replacement cost.

        The copy is not released back to the pool and the edition's stock is
        left unchanged, so it stays permanently unavailable.
        """
        borrowing_id = IdentifierValidator.validate(borrowing_id, "borrowing_id")

        def unit() -> Borrowing:
            borrowing = self._require_borrowing(borrowing_id)
            if borrowing.status.is_terminal:
                if borrowing.status is BorrowingStatus.RETURNED:
                    raise CannotMarkReturnedAsLostError()
                raise AlreadyLostError()

            edition = self.repository.get_edition(borrowing.edition_id)
            price = edition.price if edition is not None else None
            now = self.clock.now()
            borrowing.status = BorrowingStatus.LOST
            borrowing.fine_amount = replacement_cost(
                price, self.policy.lost_fine_ratio, self.policy.default_replacement_cost
            )
            borrowing.append_note(f"Marked as lost on {now.isoformat()}")
            return self.repository.update_borrowing(borrowing)

        return self.repository.run_atomic(unit)

    # ------------------------- Queries ------------------------- #
    def get_borrowing(self, borrowing_id: str) -> Borrowing:
        return self._require_borrowing(IdentifierValidator.validate(borrowing_id, "borrowing_id"))

    def list_borrowings(self, status: Any = None) -> List[Borrowing]:
        return self.repository.list_borrowings(status=validate_status(status) if status else None)

    def list_by_status(self, status: Any) -> List[Borrowing]:
        return self.repository.list_borrowings(status=validate_status(status))

    def member_history(self, member_id: str) -> List[Borrowing]:
        member = self.get_member(member_id)
        return self.repository.list_borrowings(member_id=member.id)

    def list_overdue(self) -> List[Borrowing]:
        return self.repository.list_overdue(self.clock.now())

    def stats(self) -> Dict[str, float]:
        return self.repository.borrowing_stats(self.clock.now())

    def _require_borrowing(self, borrowing_id: str) -> Borrowing:
        borrowing = self.repository.get_borrowing(borrowing_id)
        if borrowing is None:
            raise NotFoundError("Borrowing", borrowing_id)
        return borrowing

    # ------------------------- Members & editions ------------------------- #
    def register_member(self, name: str, email: str, active: bool = True) -> Member:
        name = TextValidator.validate_name(name)
        email = TextValidator.validate_email(email)
        if self.repository.find_member_by_email(email):
            raise ConflictError("Email already exists")
        return self.repository.add_member(name, email, active=active, created_at=self.clock.now())

    def get_member(self, member_id: str) -> Member:
        member_id = IdentifierValidator.validate(member_id, "member_id")
        member = self.repository.get_member(member_id)
        if member is None:
            raise NotFoundError("Member", member_id)
        return member

    def set_member_active(self, member_id: str, active: bool) -> Member:
        member = self.get_member(member_id)
        member.active = bool(active)
        return self.repository.update_member(member)

    def list_members(self) -> List[Member]:
        return self.repository.list_members()

    def add_edition(self, book_title: str, stock_quantity: int, price: Any = None,
                    format: Optional[str] = None) -> Edition:
        book_title = TextValidator.validate_name(book_title, "book_title")
        stock_quantity = InventoryValidator.validate_quantity(stock_quantity)
        return self.repository.add_edition(
            book_title, stock_quantity, price=InventoryValidator.validate_price(price), format=format
        )

    def get_edition(self, edition_id: str) -> Edition:
        edition_id = IdentifierValidator.validate(edition_id, "edition_id")
        edition = self.repository.get_edition(edition_id)
        if edition is None:
            raise NotFoundError("Edition", edition_id)
        return edition

    def list_editions(self) -> List[Edition]:
        return self.repository.list_editions()

    def due_date_for(self, borrowed_at: datetime) -> datetime:
        return borrowed_at + timedelta(days=self.policy.default_loan_days)
