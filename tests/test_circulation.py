import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from school_library.core.exceptions import (
    ConcurrencyConflictError, InputValidationError, InvalidStateError, NotFoundError
)
from school_library.models.book import Book
from school_library.models.enum import BookStatus, BorrowStatus, MemberStatus
from school_library.models.filters import BorrowFilter, StatisticsFilter
from school_library.scheduler.jobs import sweep_overdue


def assert_copy_bounds(book: Book) -> None:
    assert 0 <= book.available_copies <= book.total_copies


# --- borrow ---

async def test_single_copy_borrow_then_second_borrow_fails_then_on_time_return(
    circulation, catalog, members, make_book, make_member
):
    book = await make_book(total_copies=1)
    first = await make_member()
    second = await make_member()

    record = await circulation.borrow(first.id, book.id, borrow_days=14)
    assert record.status == BorrowStatus.ISSUED

    book = await catalog.get_book(book.id)
    assert book.available_copies == 0
    assert book.borrow_count == 1
    # copies exhausted, but the librarian flag is not touched
    assert book.status == BookStatus.AVAILABLE

    with pytest.raises(InvalidStateError):
        await circulation.borrow(second.id, book.id, borrow_days=14)

    returned = await circulation.return_book(record.id)
    assert returned.status == BorrowStatus.RETURNED
    assert returned.fine_amount == 0
    assert returned.days_overdue == 0

    book = await catalog.get_book(book.id)
    assert book.available_copies == 1
    assert_copy_bounds(book)
    member = await members.get_member(first.id)
    assert member.current_borrow_count == 0
    assert member.total_borrow_count == 1
    assert member.fine_amount == 0


async def test_borrow_updates_member_counters(circulation, members, make_book, make_member):
    book = await make_book(total_copies=3)
    member = await make_member()

    await circulation.borrow(member.id, book.id, borrow_days=7)

    member = await members.get_member(member.id)
    assert member.current_borrow_count == 1
    assert member.total_borrow_count == 1


async def test_borrow_at_limit_fails_and_leaves_counters_unchanged(
    circulation, catalog, members, make_book, make_member
):
    first_book = await make_book(title="Dune")
    second_book = await make_book(title="Emma")
    member = await make_member(max_borrow_limit=1)
    await circulation.borrow(member.id, first_book.id, borrow_days=7)

    with pytest.raises(InvalidStateError, match="limit"):
        await circulation.borrow(member.id, second_book.id, borrow_days=7)

    second_book = await catalog.get_book(second_book.id)
    assert second_book.available_copies == 1
    assert second_book.borrow_count == 0
    member = await members.get_member(member.id)
    assert member.current_borrow_count == 1
    assert member.total_borrow_count == 1


async def test_borrow_requires_active_member(circulation, members, make_book, make_member):
    book = await make_book()
    member = await make_member()
    await members.update_member_status(member.id, MemberStatus.SUSPENDED)

    with pytest.raises(InvalidStateError, match="not active"):
        await circulation.borrow(member.id, book.id, borrow_days=7)


async def test_borrow_unknown_member_or_book(circulation, make_book, make_member):
    book = await make_book()
    member = await make_member()

    with pytest.raises(NotFoundError):
        await circulation.borrow("000000000000000000000000", book.id, borrow_days=7)
    with pytest.raises(NotFoundError):
        await circulation.borrow(member.id, "000000000000000000000000", borrow_days=7)


async def test_borrow_rejects_book_flagged_unavailable(circulation, catalog, make_book, make_member):
    book = await make_book(total_copies=2)
    member = await make_member()
    await catalog.update_book_status(book.id, BookStatus.DAMAGED)

    with pytest.raises(InvalidStateError, match="not available"):
        await circulation.borrow(member.id, book.id, borrow_days=7)


async def test_borrow_due_date_validation(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()

    with pytest.raises(InputValidationError):
        await circulation.borrow(member.id, book.id)
    with pytest.raises(InputValidationError):
        await circulation.borrow(member.id, book.id, borrow_days=0)
    with pytest.raises(InputValidationError):
        await circulation.borrow(member.id, book.id, borrow_days=365)
    with pytest.raises(InvalidStateError, match="future"):
        await circulation.borrow(member.id, book.id, due_date=clock.now())
    with pytest.raises(InvalidStateError, match="future"):
        await circulation.borrow(member.id, book.id, due_date=clock.now() - timedelta(days=5))


async def test_borrow_with_explicit_due_date(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()
    naive_due = (clock.now() + timedelta(days=10)).replace(tzinfo=None)

    record = await circulation.borrow(member.id, book.id, due_date=naive_due, note="Term project")

    assert record.due_date == clock.now() + timedelta(days=10)
    assert record.due_date.tzinfo is not None
    assert record.borrow_date == clock.now()
    assert record.note == "Term project"


async def test_explicit_due_date_takes_precedence_over_borrow_days(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()

    record = await circulation.borrow(
        member.id, book.id, due_date=clock.now() + timedelta(days=3), borrow_days=30
    )

    assert record.due_date == clock.now() + timedelta(days=3)


async def test_borrow_is_rolled_back_when_member_slot_cannot_be_claimed(
    circulation, catalog, uow, monkeypatch, make_book, make_member
):
    book = await make_book()
    member = await make_member()

    async def lost_race(*args, **kwargs):
        return False

    monkeypatch.setattr(uow.members, "claim_borrow_slot", lost_race)

    with pytest.raises(ConcurrencyConflictError):
        await circulation.borrow(member.id, book.id, borrow_days=7)

    book = await catalog.get_book(book.id)
    assert book.available_copies == 1
    assert book.borrow_count == 0
    page = await circulation.list_records(BorrowFilter(member_id=member.id))
    assert page.total == 0


async def test_concurrent_borrows_never_oversell_last_copy(circulation, catalog, make_book, make_member):
    book = await make_book(total_copies=1)
    borrowers = [await make_member() for _ in range(5)]

    results = await asyncio.gather(
        *(circulation.borrow(m.id, book.id, borrow_days=7) for m in borrowers),
        return_exceptions=True,
    )

    issued = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InvalidStateError)]
    assert len(issued) == 1
    assert len(rejected) == 4
    book = await catalog.get_book(book.id)
    assert book.available_copies == 0
    assert_copy_bounds(book)


# --- return ---

async def test_late_return_charges_daily_fine(circulation, clock, members, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    clock.advance(days=12)
    returned = await circulation.return_book(record.id, returned_to="librarian-1", notes="Cover worn")

    assert returned.days_overdue == 5
    assert returned.fine_amount == 5
    assert returned.return_date == clock.now()
    assert returned.returned_to == "librarian-1"
    assert returned.return_notes == "Cover worn"
    member = await members.get_member(member.id)
    assert member.fine_amount == 5
    assert member.current_borrow_count == 0


async def test_partial_day_late_rounds_up(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    clock.advance(days=7, hours=1)
    returned = await circulation.return_book(record.id)

    assert returned.days_overdue == 1
    assert returned.fine_amount == 1


async def test_return_already_returned_fails_and_mutates_nothing(
    circulation, catalog, members, clock, make_book, make_member
):
    book = await make_book(total_copies=2)
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    clock.advance(days=9)
    returned = await circulation.return_book(record.id)

    clock.advance(days=3)
    with pytest.raises(InvalidStateError, match="already been returned"):
        await circulation.return_book(record.id)

    assert await circulation.get_record(record.id) == returned
    book = await catalog.get_book(book.id)
    assert book.available_copies == 2
    member = await members.get_member(member.id)
    assert member.fine_amount == 2
    assert member.current_borrow_count == 0


async def test_return_unknown_record(circulation):
    with pytest.raises(NotFoundError):
        await circulation.return_book("000000000000000000000000")


async def test_return_after_sweep_recomputes_fine_from_due_date(
    circulation, clock, policy, uow, make_book, make_member
):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    clock.advance(days=9)
    await sweep_overdue(uow, clock, policy)

    clock.advance(days=2)
    returned = await circulation.return_book(record.id)

    assert returned.status == BorrowStatus.RETURNED
    assert returned.days_overdue == 4
    assert returned.fine_amount == 4


# --- renew ---

async def test_renew_defaults_to_renewal_period(circulation, clock, policy, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    first_due = record.due_date

    clock.advance(days=3)
    renewed = await circulation.renew_book(record.id)

    assert renewed.due_date == clock.now() + timedelta(days=policy.renewal_days)
    assert renewed.original_due_date == first_due
    assert renewed.is_renewed is True
    assert renewed.renewal_count == 1
    assert renewed.status == BorrowStatus.ISSUED


async def test_second_renewal_keeps_first_original_due_date(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    await circulation.renew_book(record.id)
    renewed = await circulation.renew_book(record.id, new_due_date=clock.now() + timedelta(days=30))

    assert renewed.original_due_date == record.due_date
    assert renewed.due_date == clock.now() + timedelta(days=30)
    assert renewed.renewal_count == 2


async def test_renew_overdue_record_resets_fine_and_status(
    circulation, clock, policy, uow, members, make_book, make_member
):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    clock.advance(days=10)
    await sweep_overdue(uow, clock, policy)
    overdue = await circulation.get_record(record.id)
    assert overdue.status == BorrowStatus.OVERDUE
    assert overdue.fine_amount == 3

    renewed = await circulation.renew_book(record.id)

    assert renewed.status == BorrowStatus.ISSUED
    assert renewed.fine_amount == 0
    assert renewed.days_overdue == 0
    # the balance already mirrored by the sweep stays
    member = await members.get_member(member.id)
    assert member.fine_amount == 3
    assert member.overdue_count == 1


async def test_third_renewal_fails_with_count_unchanged(circulation, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    await circulation.renew_book(record.id)
    await circulation.renew_book(record.id)
    with pytest.raises(InvalidStateError, match="renewed 2 times"):
        await circulation.renew_book(record.id)

    record = await circulation.get_record(record.id)
    assert record.renewal_count == 2


async def test_renew_rejects_non_future_due_date(circulation, clock, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    with pytest.raises(InvalidStateError, match="future"):
        await circulation.renew_book(record.id, new_due_date=clock.now() - timedelta(hours=1))

    assert (await circulation.get_record(record.id)).renewal_count == 0


async def test_renew_returned_record_fails(circulation, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    await circulation.return_book(record.id)

    with pytest.raises(InvalidStateError):
        await circulation.renew_book(record.id)


# --- lost / damaged ---

async def test_mark_lost_overwrites_fine_and_keeps_copy_out(
    circulation, catalog, clock, policy, uow, members, make_book, make_member
):
    book = await make_book(total_copies=2)
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    clock.advance(days=10)
    await sweep_overdue(uow, clock, policy)

    lost = await circulation.mark_lost(record.id)

    assert lost.status == BorrowStatus.LOST
    assert lost.fine_amount == 25
    assert lost.note == "Book marked as lost"
    book = await catalog.get_book(book.id)
    assert book.available_copies == 1
    member = await members.get_member(member.id)
    assert member.fine_amount == 3 + 25
    assert member.current_borrow_count == 1


async def test_mark_lost_issued_record_keeps_copy_out(circulation, catalog, members, make_book, make_member):
    book = await make_book(total_copies=2)
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    lost = await circulation.mark_lost(record.id, notes="Left on the school bus")

    assert lost.status == BorrowStatus.LOST
    assert lost.fine_amount == 25
    assert lost.note == "Left on the school bus"
    assert (await catalog.get_book(book.id)).available_copies == 1
    assert (await members.get_member(member.id)).fine_amount == 25


async def test_mark_lost_on_returned_record_fails(circulation, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)
    await circulation.return_book(record.id)

    with pytest.raises(InvalidStateError):
        await circulation.mark_lost(record.id)


async def test_mark_damaged_charges_damage_cost(circulation, catalog, members, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    damaged = await circulation.mark_damaged(record.id, "  Water damage on pages 10-40 ")

    assert damaged.status == BorrowStatus.DAMAGED
    assert damaged.fine_amount == 15
    assert damaged.damage_description == "Water damage on pages 10-40"
    assert damaged.note == "Book marked as damaged: Water damage on pages 10-40"
    assert (await catalog.get_book(book.id)).available_copies == 0
    assert (await members.get_member(member.id)).fine_amount == 15


async def test_mark_damaged_requires_description(circulation, make_book, make_member):
    book = await make_book()
    member = await make_member()
    record = await circulation.borrow(member.id, book.id, borrow_days=7)

    with pytest.raises(InputValidationError):
        await circulation.mark_damaged(record.id, "   ")

    assert (await circulation.get_record(record.id)).status == BorrowStatus.ISSUED


# --- queries ---

async def test_ledger_reads_by_member_and_book(circulation, make_book, make_member):
    first_book = await make_book(title="Dune")
    second_book = await make_book(title="Emma")
    member = await make_member()
    other = await make_member()
    await circulation.borrow(member.id, first_book.id, borrow_days=7)
    await circulation.borrow(member.id, second_book.id, borrow_days=7)

    by_member = await circulation.records_for_member(member.id)
    by_book = await circulation.records_for_book(first_book.id)

    assert {r.book_id for r in by_member} == {first_book.id, second_book.id}
    assert [r.member_id for r in by_book] == [member.id]
    assert await circulation.records_for_member(other.id) == []
    with pytest.raises(NotFoundError):
        await circulation.records_for_member("000000000000000000000000")
    with pytest.raises(NotFoundError):
        await circulation.records_for_book("000000000000000000000000")


async def test_overdue_listing_includes_unswept_records(circulation, clock, make_book, make_member):
    book = await make_book(total_copies=2)
    member = await make_member()
    late = await circulation.borrow(member.id, book.id, borrow_days=3)
    await circulation.borrow(member.id, book.id, borrow_days=30)

    clock.advance(days=5)

    overdue = await circulation.overdue_records()
    assert [r.id for r in overdue] == [late.id]
    page = await circulation.list_records(BorrowFilter(overdue_only=True))
    assert page.total == 1


async def test_statistics_and_member_history(circulation, clock, make_book, make_member):
    book = await make_book(total_copies=3)
    member = await make_member()
    on_time = await circulation.borrow(member.id, book.id, borrow_days=7)
    late = await circulation.borrow(member.id, book.id, borrow_days=7)
    lost = await circulation.borrow(member.id, book.id, borrow_days=7)

    clock.advance(days=2)
    await circulation.return_book(on_time.id)
    clock.advance(days=7)
    await circulation.return_book(late.id)
    await circulation.mark_lost(lost.id)

    stats = await circulation.statistics(StatisticsFilter())
    assert stats.total_borrows == 3
    assert stats.total_returns == 2
    assert stats.total_lost == 1
    assert stats.total_fines == 2 + 25
    assert stats.average_borrow_duration_days == 5.5

    history = {entry.status: entry for entry in await circulation.member_history(member.id)}
    assert history[BorrowStatus.RETURNED].count == 2
    assert history[BorrowStatus.RETURNED].total_fines == 2
    assert history[BorrowStatus.RETURNED].average_days_overdue == 1
    assert history[BorrowStatus.LOST].count == 1


async def test_statistics_date_range(circulation, clock, make_book, make_member):
    book = await make_book(total_copies=2)
    member = await make_member()
    await circulation.borrow(member.id, book.id, borrow_days=7)
    clock.advance(days=20)
    await circulation.borrow(member.id, book.id, borrow_days=7)

    stats = await circulation.statistics(StatisticsFilter(date_from=clock.now() - timedelta(days=1)))

    assert stats.total_borrows == 1
    assert stats.average_borrow_duration_days is None


def test_statistics_filter_rejects_inverted_range():
    with pytest.raises(ValueError):
        StatisticsFilter(
            date_from=datetime(2024, 5, 1, tzinfo=timezone.utc),
            date_to=datetime(2024, 4, 1, tzinfo=timezone.utc),
        )
