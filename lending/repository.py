from __future__ import annotations

import abc
import threading
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, TypeVar

from lending.errors import ConflictError, InventoryError, NotFoundError
from lending.models import Borrowing, BorrowingStatus, Edition, Member, ensure_utc

T = TypeVar("T")


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def empty_stats() -> Dict[str, float]:
    return {
        "total_borrowings": 0,
        "active_borrowings": 0,
        "overdue_borrowings": 0,
        "returned_borrowings": 0,
        "lost_borrowings": 0,
        "total_fines": 0.0,
    }


class Repository(abc.ABC):
    """Storage contract for the lending core.

    ``get_*`` return None for missing records. Writes that must stay
    consistent with each other are grouped with :meth:`run_atomic`.
    """

    # --- unit of work ---
    @abc.abstractmethod
    def run_atomic(self, unit_of_work: Callable[[], T]) -> T:
        """Run ``unit_of_work`` with all-or-nothing effects and return its result."""

    # --- members ---
    @abc.abstractmethod
    def add_member(self, name: str, email: str, active: bool = True,
                   created_at: Optional[datetime] = None) -> Member: ...

    @abc.abstractmethod
    def get_member(self, member_id: str) -> Optional[Member]: ...

    @abc.abstractmethod
    def find_member_by_email(self, email: str) -> Optional[Member]: ...

    @abc.abstractmethod
    def update_member(self, member: Member) -> Member: ...

    @abc.abstractmethod
    def list_members(self) -> List[Member]: ...

    # --- editions ---
    @abc.abstractmethod
    def add_edition(self, book_title: str, stock_quantity: int, price: Optional[float] = None,
                    format: Optional[str] = None) -> Edition: ...

    @abc.abstractmethod
    def get_edition(self, edition_id: str) -> Optional[Edition]: ...

    @abc.abstractmethod
    def list_editions(self) -> List[Edition]: ...

    @abc.abstractmethod
    def adjust_edition_availability(self, edition_id: str, delta: int) -> Edition:
        """Shift available_quantity by ``delta`` keeping 0 <= available <= stock."""

    # --- borrowings ---
    @abc.abstractmethod
    def create_borrowing(self, member_id: str, edition_id: str, borrowed_at: datetime,
                         due_date: datetime, notes: Optional[str] = None) -> Borrowing: ...

    @abc.abstractmethod
    def get_borrowing(self, borrowing_id: str) -> Optional[Borrowing]: ...

    @abc.abstractmethod
    def update_borrowing(self, borrowing: Borrowing) -> Borrowing: ...

    @abc.abstractmethod
    def list_borrowings(self, member_id: Optional[str] = None,
                        status: Optional[BorrowingStatus] = None) -> List[Borrowing]:
        """Borrowings matching the filters, newest first."""

    @abc.abstractmethod
    def list_overdue(self, as_of: datetime) -> List[Borrowing]:
        """BORROWED records due strictly before ``as_of``, oldest due first."""

    @abc.abstractmethod
    def count_active_borrowings(self, member_id: str) -> int: ...

    @abc.abstractmethod
    def count_overdue_borrowings(self, member_id: str, as_of: datetime) -> int: ...

    @abc.abstractmethod
    def borrowing_stats(self, as_of: datetime) -> Dict[str, float]: ...


class InMemoryRepository(Repository):
    """Dictionary-backed repository.

    A re-entrant lock serialises units of work; a failed unit restores the
    snapshot taken on entry. Records are copied on the way in and out so
    callers never mutate stored state directly.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._members: Dict[str, dict] = {}
        self._editions: Dict[str, dict] = {}
        self._borrowings: Dict[str, dict] = {}
        # insertion order, breaks ties between equal borrowed_at values
        self._sequence: Dict[str, int] = {}
        self._depth = 0

    def run_atomic(self, unit_of_work: Callable[[], T]) -> T:
        with self._lock:
            if self._depth:
                # nested: joins the enclosing unit
                return unit_of_work()
            snapshot = self._snapshot()
            self._depth += 1
            try:
                return unit_of_work()
            except BaseException:
                self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    def _snapshot(self):
        return (
            {k: dict(v) for k, v in self._members.items()},
            {k: dict(v) for k, v in self._editions.items()},
            {k: dict(v) for k, v in self._borrowings.items()},
        )

    def _restore(self, snapshot) -> None:
        self._members, self._editions, self._borrowings = snapshot

    # --- members ---
    def add_member(self, name, email, active=True, created_at=None):
        member = Member(new_id("mbr"), name, email, active=active, created_at=created_at)
        with self._lock:
            if self.find_member_by_email(member.email):
                raise ConflictError("Email already exists")
            self._members[member.id] = member.to_dict()
        return member

    def get_member(self, member_id):
        with self._lock:
            row = self._members.get(member_id)
            return Member.from_dict(row) if row else None

    def find_member_by_email(self, email):
        key = email.strip().lower()
        with self._lock:
            for row in self._members.values():
                if row["email"] == key:
                    return Member.from_dict(row)
        return None

    def update_member(self, member):
        with self._lock:
            if member.id not in self._members:
                raise NotFoundError("Member", member.id)
            self._members[member.id] = member.to_dict()
        return member

    def list_members(self):
        with self._lock:
            members = [Member.from_dict(r) for r in self._members.values()]
        return sorted(members, key=lambda m: m.name)

    # --- editions ---
    def add_edition(self, book_title, stock_quantity, price=None, format=None):
        edition = Edition(new_id("edn"), book_title, stock_quantity, price=price, format=format)
        with self._lock:
            self._editions[edition.id] = edition.to_dict()
        return edition

    def get_edition(self, edition_id):
        with self._lock:
            row = self._editions.get(edition_id)
            return Edition.from_dict(row) if row else None

    def list_editions(self):
        with self._lock:
            editions = [Edition.from_dict(r) for r in self._editions.values()]
        return sorted(editions, key=lambda e: e.book_title)

    def adjust_edition_availability(self, edition_id, delta):
        with self._lock:
            row = self._editions.get(edition_id)
            if row is None:
                raise NotFoundError("Edition", edition_id)
            updated = row["available_quantity"] + delta
            if updated < 0 or updated > row["stock_quantity"]:
                raise InventoryError(
                    f"Edition {edition_id} availability would become {updated} "
                    f"(stock {row['stock_quantity']})"
                )
            row["available_quantity"] = updated
            return Edition.from_dict(row)

    # --- borrowings ---
    def create_borrowing(self, member_id, edition_id, borrowed_at, due_date, notes=None):
        borrowing = Borrowing(new_id("brw"), member_id, edition_id, borrowed_at, due_date, notes=notes)
        with self._lock:
            self._borrowings[borrowing.id] = borrowing.to_dict()
            self._sequence[borrowing.id] = len(self._sequence)
        return borrowing

    def get_borrowing(self, borrowing_id):
        with self._lock:
            row = self._borrowings.get(borrowing_id)
            return Borrowing.from_dict(row) if row else None

    def update_borrowing(self, borrowing):
        with self._lock:
            if borrowing.id not in self._borrowings:
                raise NotFoundError("Borrowing", borrowing.id)
            self._borrowings[borrowing.id] = borrowing.to_dict()
        return borrowing

    def _all_borrowings(self) -> List[Borrowing]:
        with self._lock:
            return [Borrowing.from_dict(r) for r in self._borrowings.values()]

    def list_borrowings(self, member_id=None, status=None):
        items = [
            b for b in self._all_borrowings()
            if (member_id is None or b.member_id == member_id)
            and (status is None or b.status is BorrowingStatus(status))
        ]
        return sorted(items, key=lambda b: (b.borrowed_at, self._sequence.get(b.id, 0)), reverse=True)

    def list_overdue(self, as_of):
        items = [b for b in self._all_borrowings() if b.is_overdue(as_of)]
        return sorted(items, key=lambda b: b.due_date)

    def count_active_borrowings(self, member_id):
        return sum(
            1 for b in self._all_borrowings()
            if b.member_id == member_id and b.status is BorrowingStatus.BORROWED
        )

    def count_overdue_borrowings(self, member_id, as_of):
        as_of = ensure_utc(as_of)
        return sum(1 for b in self._all_borrowings() if b.member_id == member_id and b.is_overdue(as_of))

    def borrowing_stats(self, as_of):
        stats = empty_stats()
        for b in self._all_borrowings():
            stats["total_borrowings"] += 1
            if b.status is BorrowingStatus.BORROWED:
                stats["active_borrowings"] += 1
                if b.is_overdue(as_of):
                    stats["overdue_borrowings"] += 1
            elif b.status is BorrowingStatus.RETURNED:
                stats["returned_borrowings"] += 1
            else:
                stats["lost_borrowings"] += 1
            if b.fine_amount is not None:
                stats["total_fines"] += b.fine_amount
        stats["total_fines"] = round(stats["total_fines"], 2)
        return stats
