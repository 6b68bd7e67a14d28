# school_library/services/circulation.py
"""Borrow, return, renew and write-off of library copies.

This service is the only writer of ledger entries and, together with the
overdue sweep, the only writer of book copy counters and member borrow/fine
counters. Each operation is a single unit of work: the precondition reads
and all writes share one transaction, and counter writes are guarded so
that a lost race surfaces as ConcurrencyConflictError instead of a
counter going out of bounds.
"""
from datetime import datetime, timedelta
from typing import List, Optional

from loguru import logger

from school_library.core.clock import Clock
from school_library.core.exceptions import (
    ConcurrencyConflictError, InputValidationError, InvalidStateError, NotFoundError
)
from school_library.core.policy import CirculationPolicy
from school_library.core.utils import days_late, ensure_utc, new_object_id
from school_library.models.borrow_record import BorrowPage, BorrowRecord
from school_library.models.enum import BookStatus, BorrowStatus, MemberStatus, OPEN_BORROW_STATUSES
from school_library.models.filters import MAX_PAGE_SIZE, BorrowFilter, StatisticsFilter
from school_library.models.report import BorrowStatistics, StatusHistoryEntry
from school_library.repositories.base import UnitOfWork


class CirculationService:
    def __init__(self, uow: UnitOfWork, clock: Clock, policy: CirculationPolicy):
        self.uow = uow
        self.clock = clock
        self.policy = policy

    async def get_record(self, record_id: str, session=None) -> BorrowRecord:
        record = await self.uow.borrows.get(record_id, session=session)
        if not record:
            raise NotFoundError(f"Borrow record '{record_id}' not found.")
        return record

    async def _save(self, record: BorrowRecord, fields: dict, session) -> BorrowRecord:
        updated = await self.uow.borrows.update(
            record.id, fields, expected_version=record.version, session=session
        )
        if not updated:
            logger.warning(f"Version conflict on borrow record '{record.id}' (expected v{record.version}).")
            raise ConcurrencyConflictError(
                f"Borrow record '{record.id}' was modified by another operation. Please retry."
            )
        return updated

    # --- Borrow ---
    async def borrow(
        self,
        member_id: str,
        book_id: str,
        due_date: Optional[datetime] = None,
        borrow_days: Optional[int] = None,
        note: Optional[str] = None,
        issued_by: Optional[str] = None,
    ) -> BorrowRecord:
        """Issue one copy of a book to a member."""
        if due_date is None and borrow_days is None:
            raise InputValidationError("Either due_date or borrow_days is required.")
        if borrow_days is not None and not 1 <= borrow_days <= self.policy.max_borrow_days:
            raise InputValidationError(f"borrow_days must be between 1 and {self.policy.max_borrow_days}.")

        now = self.clock.now()
        async with self.uow.transaction() as session:
            member = await self.uow.members.get(member_id, session=session)
            if not member:
                raise NotFoundError("Member not found.")
            if member.status != MemberStatus.ACTIVE:
                raise InvalidStateError("Member is not active.")
            if member.current_borrow_count >= member.max_borrow_limit:
                raise InvalidStateError(
                    f"Member has reached borrowing limit of {member.max_borrow_limit} books."
                )

            book = await self.uow.books.get(book_id, session=session)
            if not book:
                raise NotFoundError("Book not found.")
            if book.available_copies <= 0 or book.status != BookStatus.AVAILABLE:
                raise InvalidStateError("Book is not available for borrowing.")

            # An explicit due_date wins over borrow_days
            if due_date is not None:
                resolved_due = ensure_utc(due_date)
            else:
                resolved_due = now + timedelta(days=borrow_days)
            if resolved_due <= now:
                raise InvalidStateError("Due date must be in the future.")

            record = BorrowRecord(
                id=new_object_id(),
                member_id=member.id,
                book_id=book.id,
                school_id=book.school_id or member.school_id,
                borrow_date=now,
                due_date=resolved_due,
                status=BorrowStatus.ISSUED,
                note=note,
                issued_by=issued_by,
                created_at=now,
                updated_at=now,
            )
            await self.uow.borrows.insert(record, session=session)

            if not await self.uow.books.take_copy(book.id, now, session=session):
                raise ConcurrencyConflictError("The last available copy was taken by another request. Please retry.")
            if not await self.uow.members.claim_borrow_slot(member.id, now, session=session):
                raise ConcurrencyConflictError("Member borrowing count changed concurrently. Please retry.")

        logger.info(
            f"Book '{book.id}' issued to member '{member.member_code}' as record '{record.id}', "
            f"due {resolved_due.isoformat()}."
        )
        return record

    # --- Return ---
    async def return_book(
        self, record_id: str, returned_to: Optional[str] = None, notes: Optional[str] = None
    ) -> BorrowRecord:
        """Close a loan, charging the overdue fine computed from the due date."""
        now = self.clock.now()
        async with self.uow.transaction() as session:
            record = await self.get_record(record_id, session=session)
            if record.status == BorrowStatus.RETURNED:
                raise InvalidStateError("Book has already been returned.")

            # Computed from due_date, whether or not the sweep has marked it OVERDUE
            days_overdue = days_late(record.due_date, now)
            fine_amount = self.policy.overdue_fine(days_overdue)

            updated = await self._save(record, {
                "status": BorrowStatus.RETURNED,
                "return_date": now,
                "returned_to": returned_to,
                "return_notes": notes,
                "fine_amount": fine_amount,
                "days_overdue": days_overdue,
                "updated_at": now,
            }, session)

            if not await self.uow.books.return_copy(record.book_id, now, session=session):
                raise InvalidStateError(
                    f"Copy counters of book '{record.book_id}' do not allow restoring a copy."
                )
            if not await self.uow.members.release_borrow_slot(record.member_id, now, session=session):
                raise InvalidStateError(
                    f"Member '{record.member_id}' has no active borrow to release."
                )
            if fine_amount > 0:
                await self.uow.members.add_fine(record.member_id, fine_amount, now, session=session)

        logger.info(
            f"Record '{record_id}' returned. Days overdue: {days_overdue}, fine: {fine_amount}."
        )
        return updated

    # --- Renew ---
    async def renew_book(self, record_id: str, new_due_date: Optional[datetime] = None) -> BorrowRecord:
        """
        Extend an open loan. Renewal clears the record's fine and overdue days
        and puts an OVERDUE record back to ISSUED. A fine already mirrored into
        the member balance by the sweep is left there.
        """
        now = self.clock.now()
        async with self.uow.transaction() as session:
            record = await self.get_record(record_id, session=session)
            if record.status not in OPEN_BORROW_STATUSES:
                raise InvalidStateError(f"Book cannot be renewed (status {record.status.value}).")
            if record.renewal_count >= self.policy.max_renewals:
                raise InvalidStateError(
                    f"Book has already been renewed {self.policy.max_renewals} times."
                )

            if new_due_date is not None:
                resolved_due = ensure_utc(new_due_date)
            else:
                resolved_due = now + timedelta(days=self.policy.renewal_days)
            if resolved_due <= now:
                raise InvalidStateError("New due date must be in the future.")

            fields = {
                "due_date": resolved_due,
                "status": BorrowStatus.ISSUED,
                "is_renewed": True,
                "renewal_count": record.renewal_count + 1,
                "fine_amount": 0.0,
                "days_overdue": 0,
                "updated_at": now,
            }
            if record.original_due_date is None:
                fields["original_due_date"] = record.due_date
            updated = await self._save(record, fields, session)

        logger.info(
            f"Record '{record_id}' renewed ({updated.renewal_count}/{self.policy.max_renewals}), "
            f"new due date {resolved_due.isoformat()}."
        )
        return updated

    # --- Lost / Damaged ---
    async def mark_lost(self, record_id: str, notes: Optional[str] = None) -> BorrowRecord:
        """Charge the replacement cost. The copy is gone, so copy counts are not restored."""
        now = self.clock.now()
        cost = self.policy.replacement_cost
        async with self.uow.transaction() as session:
            record = await self.get_record(record_id, session=session)
            if record.status == BorrowStatus.RETURNED:
                raise InvalidStateError("Book has already been returned.")

            updated = await self._save(record, {
                "status": BorrowStatus.LOST,
                "fine_amount": cost,
                "note": notes or "Book marked as lost",
                "updated_at": now,
            }, session)
            await self.uow.members.add_fine(record.member_id, cost, now, session=session)

        logger.info(f"Record '{record_id}' marked LOST. Replacement cost charged: {cost}.")
        return updated

    async def mark_damaged(self, record_id: str, damage_description: str) -> BorrowRecord:
        """Charge the damage cost. Copy counts are not restored."""
        description = (damage_description or "").strip()
        if not description:
            raise InputValidationError("damage_description is required.")

        now = self.clock.now()
        cost = self.policy.damage_cost
        async with self.uow.transaction() as session:
            record = await self.get_record(record_id, session=session)
            if record.status == BorrowStatus.RETURNED:
                raise InvalidStateError("Book has already been returned.")

            updated = await self._save(record, {
                "status": BorrowStatus.DAMAGED,
                "fine_amount": cost,
                "damage_description": description,
                "note": f"Book marked as damaged: {description}",
                "updated_at": now,
            }, session)
            await self.uow.members.add_fine(record.member_id, cost, now, session=session)

        logger.info(f"Record '{record_id}' marked DAMAGED. Damage cost charged: {cost}.")
        return updated

    # --- Queries ---
    async def list_records(self, borrow_filter: BorrowFilter) -> BorrowPage:
        now = self.clock.now()
        items = await self.uow.borrows.find(borrow_filter, now)
        total = await self.uow.borrows.count(borrow_filter, now)
        return BorrowPage(items=items, total=total, skip=borrow_filter.skip, limit=borrow_filter.limit)

    async def records_for_member(self, member_id: str, skip: int = 0, limit: int = MAX_PAGE_SIZE) -> List[BorrowRecord]:
        if not await self.uow.members.get(member_id):
            raise NotFoundError(f"Member with ID '{member_id}' not found.")
        return await self.uow.borrows.find(
            BorrowFilter(member_id=member_id, skip=skip, limit=limit), self.clock.now()
        )

    async def records_for_book(self, book_id: str, skip: int = 0, limit: int = MAX_PAGE_SIZE) -> List[BorrowRecord]:
        if not await self.uow.books.get(book_id):
            raise NotFoundError(f"Book with ID '{book_id}' not found.")
        return await self.uow.borrows.find(
            BorrowFilter(book_id=book_id, skip=skip, limit=limit), self.clock.now()
        )

    async def overdue_records(self, school_id: Optional[str] = None) -> List[BorrowRecord]:
        return await self.uow.borrows.find_overdue(self.clock.now(), school_id)

    async def statistics(self, stats_filter: StatisticsFilter) -> BorrowStatistics:
        return await self.uow.borrows.statistics(stats_filter)

    async def member_history(self, member_id: str) -> List[StatusHistoryEntry]:
        if not await self.uow.members.get(member_id):
            raise NotFoundError(f"Member with ID '{member_id}' not found.")
        return await self.uow.borrows.member_history(member_id)
