import random
from datetime import timedelta

import pytest

from lending.errors import (
    AlreadyLostError,
    AlreadyReturnedError,
    CannotMarkReturnedAsLostError,
    CannotReturnLostError,
    ConflictError,
    HasOverdueError,
    InactiveMemberError,
    LendingError,
    LimitReachedError,
    NotFoundError,
    OutOfStockError,
    ValidationError,
)
from lending.models import BorrowingStatus


@pytest.fixture
def member(circulation):
    return circulation.register_member("Ada Lovelace", "ada@example.com")


def test_borrow_reserves_a_copy(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1, price=40.00)
    borrowing = circulation.borrow(member.id, edition.id, notes="first loan")

    assert borrowing.status is BorrowingStatus.BORROWED
    assert borrowing.borrowed_at == clock.now()
    assert borrowing.due_date == clock.now() + timedelta(days=30)
    assert borrowing.notes == "first loan"
    assert borrowing.returned_at is None
    assert borrowing.fine_amount is None
    assert circulation.get_edition(edition.id).available_quantity == 0
    assert circulation.get_borrowing(borrowing.id).to_dict() == borrowing.to_dict()


def test_borrow_with_explicit_due_date(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1)
    due = clock.now() + timedelta(days=7)
    borrowing = circulation.borrow(member.id, edition.id, due_date=due.isoformat())
    assert borrowing.due_date == due


def test_borrow_validates_inputs(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1)
    with pytest.raises(ValidationError):
        circulation.borrow(member.id, edition.id, due_date=clock.now() - timedelta(days=1))
    with pytest.raises(ValidationError):
        circulation.borrow("", edition.id)
    assert circulation.get_edition(edition.id).available_quantity == 1


def test_end_to_end_last_copy(circulation, member):
    other = circulation.register_member("Grace Hopper", "grace@example.com")
    edition = circulation.add_edition("Dune", 1)

    first = circulation.borrow(member.id, edition.id)
    assert circulation.get_edition(edition.id).available_quantity == 0

    with pytest.raises(OutOfStockError):
        circulation.borrow(other.id, edition.id)
    assert circulation.get_edition(edition.id).available_quantity == 0
    assert len(circulation.list_borrowings()) == 1

    circulation.return_borrowing(first.id)
    assert circulation.get_edition(edition.id).available_quantity == 1


def test_rejected_borrow_mutates_nothing(circulation, member):
    edition = circulation.add_edition("Dune", 0)
    with pytest.raises(OutOfStockError):
        circulation.borrow(member.id, edition.id)
    assert circulation.member_history(member.id) == []
    assert circulation.get_edition(edition.id).available_quantity == 0


def test_inactive_member_cannot_borrow(circulation, member):
    edition = circulation.add_edition("Dune", 1)
    circulation.set_member_active(member.id, False)
    with pytest.raises(InactiveMemberError):
        circulation.borrow(member.id, edition.id)
    circulation.set_member_active(member.id, True)
    circulation.borrow(member.id, edition.id)


def test_fifth_borrow_allowed_sixth_rejected(circulation, member):
    edition = circulation.add_edition("Dune", 10)
    for _ in range(4):
        circulation.borrow(member.id, edition.id)
    circulation.borrow(member.id, edition.id)
    with pytest.raises(LimitReachedError):
        circulation.borrow(member.id, edition.id)
    assert circulation.get_edition(edition.id).available_quantity == 5


def test_overdue_member_is_blocked(circulation, member, clock):
    edition = circulation.add_edition("Dune", 3)
    circulation.borrow(member.id, edition.id, due_date=clock.now() + timedelta(days=1))
    clock.advance(days=3)
    with pytest.raises(HasOverdueError):
        circulation.borrow(member.id, edition.id)


def test_return_on_time_has_no_fine(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1)
    borrowing = circulation.borrow(member.id, edition.id)
    clock.advance(days=30)
    returned = circulation.return_borrowing(borrowing.id)
    assert returned.status is BorrowingStatus.RETURNED
    assert returned.returned_at == clock.now()
    assert returned.fine_amount is None


def test_late_return_charges_per_started_day(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1)
    borrowing = circulation.borrow(member.id, edition.id, due_date=clock.now() + timedelta(days=1))
    clock.advance(days=10, hours=2)  # 9 days 2 hours late
    returned = circulation.return_borrowing(borrowing.id)
    assert returned.fine_amount == 5.00
    assert circulation.get_borrowing(borrowing.id).fine_amount == 5.00


def test_return_twice_fails_without_inventory_change(circulation, member):
    edition = circulation.add_edition("Dune", 2)
    borrowing = circulation.borrow(member.id, edition.id)
    circulation.return_borrowing(borrowing.id)
    with pytest.raises(AlreadyReturnedError):
        circulation.return_borrowing(borrowing.id)
    assert circulation.get_edition(edition.id).available_quantity == 2


def test_return_lost_fails(circulation, member):
    edition = circulation.add_edition("Dune", 2)
    borrowing = circulation.borrow(member.id, edition.id)
    circulation.mark_lost(borrowing.id)
    with pytest.raises(CannotReturnLostError):
        circulation.return_borrowing(borrowing.id)
    assert circulation.get_edition(edition.id).available_quantity == 1


def test_return_unknown_borrowing(circulation):
    with pytest.raises(NotFoundError):
        circulation.return_borrowing("brw_missing")


def test_mark_lost_charges_half_price(circulation, member):
    edition = circulation.add_edition("Dune", 1, price=40.00)
    borrowing = circulation.borrow(member.id, edition.id)
    lost = circulation.mark_lost(borrowing.id)
    assert lost.status is BorrowingStatus.LOST
    assert lost.fine_amount == 20.00
    assert lost.notes.startswith("Marked as lost on ")


def test_mark_lost_without_price_uses_default(circulation, member):
    edition = circulation.add_edition("Dune", 1)
    borrowing = circulation.borrow(member.id, edition.id)
    assert circulation.mark_lost(borrowing.id).fine_amount == 25.00


def test_mark_lost_with_zero_price_uses_default(circulation, member):
    edition = circulation.add_edition("Pamphlet", 1, price=0)
    borrowing = circulation.borrow(member.id, edition.id)
    assert circulation.mark_lost(borrowing.id).fine_amount == 25.00


def test_mark_lost_keeps_previous_notes(circulation, member, clock):
    edition = circulation.add_edition("Dune", 1)
    borrowing = circulation.borrow(member.id, edition.id, notes="gift copy")
    lost = circulation.mark_lost(borrowing.id)
    assert lost.notes == f"gift copy - Marked as lost on {clock.now().isoformat()}"
    assert circulation.get_borrowing(borrowing.id).notes == lost.notes


def test_lost_copy_stays_unavailable(circulation, member):
    edition = circulation.add_edition("Dune", 2)
    borrowing = circulation.borrow(member.id, edition.id)
    circulation.mark_lost(borrowing.id)
    edition = circulation.get_edition(edition.id)
    assert edition.available_quantity == 1
    assert edition.stock_quantity == 2


def test_mark_lost_invalid_transitions(circulation, member):
    edition = circulation.add_edition("Dune", 2)
    returned = circulation.borrow(member.id, edition.id)
    circulation.return_borrowing(returned.id)
    with pytest.raises(CannotMarkReturnedAsLostError):
        circulation.mark_lost(returned.id)

    lost = circulation.borrow(member.id, edition.id)
    circulation.mark_lost(lost.id)
    with pytest.raises(AlreadyLostError):
        circulation.mark_lost(lost.id)


def test_failed_unit_of_work_rolls_back(circulation, member, monkeypatch):
    edition = circulation.add_edition("Dune", 1)

    def boom(*args, **kwargs):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(circulation.repository, "create_borrowing", boom)
    with pytest.raises(RuntimeError):
        circulation.borrow(member.id, edition.id)
    assert circulation.get_edition(edition.id).available_quantity == 1


def test_failed_return_rolls_back_state_change(circulation, member, monkeypatch):
    edition = circulation.add_edition("Dune", 1)
    borrowing = circulation.borrow(member.id, edition.id)

    def boom(edition_id):
        raise RuntimeError("ledger unavailable")

    monkeypatch.setattr(circulation.ledger, "release", boom)
    with pytest.raises(RuntimeError):
        circulation.return_borrowing(borrowing.id)
    assert circulation.get_borrowing(borrowing.id).status is BorrowingStatus.BORROWED
    assert circulation.get_edition(edition.id).available_quantity == 0


def test_queries_and_stats(circulation, member, clock):
    dune = circulation.add_edition("Dune", 3, price=10.00)
    first = circulation.borrow(member.id, dune.id, due_date=clock.now() + timedelta(days=2))
    clock.advance(hours=1)
    second = circulation.borrow(member.id, dune.id, due_date=clock.now() + timedelta(days=1))
    clock.advance(hours=1)
    third = circulation.borrow(member.id, dune.id)
    circulation.mark_lost(third.id)

    clock.advance(days=3)
    assert [b.id for b in circulation.list_overdue()] == [second.id, first.id]
    assert [b.id for b in circulation.member_history(member.id)] == [third.id, second.id, first.id]

    circulation.return_borrowing(first.id)
    assert [b.id for b in circulation.list_by_status("BORROWED")] == [second.id]
    assert [b.id for b in circulation.list_borrowings("lost")] == [third.id]

    stats = circulation.stats()
    assert stats["total_borrowings"] == 3
    assert stats["active_borrowings"] == 1
    assert stats["overdue_borrowings"] == 1
    assert stats["returned_borrowings"] == 1
    assert stats["lost_borrowings"] == 1
    # returned 1 day 2 hours late (1.00) plus half the lost copy price (5.00)
    assert circulation.get_borrowing(first.id).fine_amount == 1.00
    assert stats["total_fines"] == pytest.approx(6.00)


def test_same_instant_borrowings_list_newest_first(circulation, member):
    editions = [circulation.add_edition(title, 1) for title in ("Dune", "Emma", "Ulysses")]
    created = [circulation.borrow(member.id, e.id) for e in editions]

    expected = [b.id for b in reversed(created)]
    assert [b.id for b in circulation.member_history(member.id)] == expected
    assert [b.id for b in circulation.list_borrowings()] == expected


def test_list_members_and_editions_by_name(circulation, member):
    circulation.register_member("Grace Hopper", "grace@example.com")
    circulation.add_edition("Ulysses", 2)
    circulation.add_edition("Dune", 1, price=40.00)

    assert [m.name for m in circulation.list_members()] == ["Ada Lovelace", "Grace Hopper"]
    editions = circulation.list_editions()
    assert [e.book_title for e in editions] == ["Dune", "Ulysses"]
    assert editions[1].available_quantity == 2


def test_member_history_unknown_member(circulation):
    with pytest.raises(NotFoundError):
        circulation.member_history("mbr_missing")


def test_duplicate_member_email(circulation, member):
    with pytest.raises(ConflictError):
        circulation.register_member("Ada Again", "ADA@example.com")


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_availability_stays_within_stock(circulation, clock, seed):
    rng = random.Random(seed)
    members = [circulation.register_member(f"Member {i}", f"m{i}@example.com") for i in range(6)]
    editions = [circulation.add_edition(f"Title {i}", rng.randint(0, 3)) for i in range(3)]
    open_loans = []

    for _ in range(60):
        clock.advance(hours=1)
        if open_loans and rng.random() < 0.4:
            loan = open_loans.pop(rng.randrange(len(open_loans)))
            circulation.return_borrowing(loan.id)
        else:
            try:
                loan = circulation.borrow(rng.choice(members).id, rng.choice(editions).id)
            except LendingError:
                continue
            open_loans.append(loan)

        for edition in editions:
            current = circulation.get_edition(edition.id)
            active = sum(1 for b in open_loans if b.edition_id == edition.id)
            assert 0 <= current.available_quantity <= current.stock_quantity
            assert current.available_quantity == current.stock_quantity - active
