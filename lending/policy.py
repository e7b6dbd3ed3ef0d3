from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from lending.clock import SystemClock
from lending.config import LendingPolicy
from lending.errors import (
    HasOverdueError,
    InactiveMemberError,
    LendingError,
    LimitReachedError,
    NotFoundError,
    OutOfStockError,
)
from lending.repository import Repository


@dataclass(frozen=True)
class Decision:
    """Outcome of a borrow eligibility check."""

    error: Optional[LendingError] = None

    @property
    def accepted(self) -> bool:
        return self.error is None

    def raise_for_rejection(self) -> None:
        if self.error is not None:
            raise self.error


ACCEPT = Decision()


class BorrowingPolicy:
    """Decides whether a member may borrow an edition right now.

    Checks run in a fixed order and stop at the first failure: member exists,
    member is active, edition exists, a copy is available, the member has
    nothing overdue, the member is under the active-loan cap. No side effects.
    """

    def __init__(self, repository: Repository, clock=None, policy: Optional[LendingPolicy] = None) -> None:
        self.repository = repository
        self.clock = clock or SystemClock()
        self.policy = policy or LendingPolicy()

    def evaluate(self, member_id: str, edition_id: str) -> Decision:
        repo = self.repository

        member = repo.get_member(member_id)
        if member is None:
            return Decision(NotFoundError("Member", member_id))
        if not member.active:
            return Decision(InactiveMemberError())

        edition = repo.get_edition(edition_id)
        if edition is None:
            return Decision(NotFoundError("Edition", edition_id))
        if edition.available_quantity <= 0:
            return Decision(OutOfStockError())

        if repo.count_overdue_borrowings(member_id, self.clock.now()) > 0:
            return Decision(HasOverdueError())

        limit = self.policy.max_active_borrowings
        if repo.count_active_borrowings(member_id) >= limit:
            return Decision(LimitReachedError(limit))

        return ACCEPT

    def check(self, member_id: str, edition_id: str) -> None:
        self.evaluate(member_id, edition_id).raise_for_rejection()
