# school_library/repositories/memory.py
"""Single-process store with the same guarantees as the Mongo backend.

A transaction holds a store-wide lock and restores a snapshot when the
block raises, so every unit of work is all-or-nothing and serialized.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from loguru import logger
from pydantic import BaseModel

from school_library.core.utils import SECONDS_PER_DAY
from school_library.models.book import Book
from school_library.models.borrow_record import BorrowRecord
from school_library.models.enum import (
    BookStatus, BorrowStatus, MemberRole, MemberStatus, OPEN_BORROW_STATUSES
)
from school_library.models.filters import BookFilter, BorrowFilter, MemberFilter, StatisticsFilter
from school_library.models.member import Member
from school_library.models.report import (
    BorrowStatistics, MemberStatistics, OverdueSummary, StatusHistoryEntry
)
from school_library.repositories.base import (
    BookRepository, BorrowRepository, MemberRepository, SequenceRepository, UnitOfWork
)


def _contains(haystack: Optional[str], needle: str) -> bool:
    return bool(haystack) and needle.lower() in haystack.lower()


class _Collection:
    """id -> model, handing out copies so callers never alias stored state."""

    def __init__(self):
        self.rows: Dict[str, BaseModel] = {}

    def get(self, key: str) -> Optional[Any]:
        row = self.rows.get(key)
        return row.model_copy(deep=True) if row is not None else None

    def put(self, row: BaseModel) -> None:
        self.rows[row.id] = row.model_copy(deep=True)

    def values(self) -> List[Any]:
        return [row.model_copy(deep=True) for row in self.rows.values()]

    def update(self, key: str, fields: Dict[str, Any], expected_version: Optional[int]) -> Optional[Any]:
        row = self.rows.get(key)
        if row is None:
            return None
        if expected_version is not None and row.version != expected_version:
            return None
        updated = row.model_copy(update={**fields, "version": row.version + 1}, deep=True)
        self.rows[key] = updated
        return updated.model_copy(deep=True)

    def snapshot(self) -> Dict[str, BaseModel]:
        return dict(self.rows)

    def restore(self, snapshot: Dict[str, BaseModel]) -> None:
        self.rows = snapshot


class InMemoryBookRepository(BookRepository):
    def __init__(self, collection: _Collection):
        self._books = collection

    async def get(self, book_id: str, session=None) -> Optional[Book]:
        return self._books.get(book_id)

    async def get_by_isbn(self, isbn: str, session=None) -> Optional[Book]:
        return next((b for b in self._books.values() if b.isbn == isbn), None)

    async def insert(self, book: Book, session=None) -> Book:
        self._books.put(book)
        return book

    async def update(self, book_id, fields, expected_version=None, session=None) -> Optional[Book]:
        return self._books.update(book_id, fields, expected_version)

    async def delete(self, book_id: str, session=None) -> bool:
        return self._books.rows.pop(book_id, None) is not None

    async def take_copy(self, book_id: str, now: datetime, session=None) -> bool:
        book = self._books.get(book_id)
        if book is None or book.available_copies <= 0 or book.status != BookStatus.AVAILABLE:
            return False
        self._books.update(book_id, {
            "available_copies": book.available_copies - 1,
            "borrow_count": book.borrow_count + 1,
            "updated_at": now,
        }, None)
        return True

    async def return_copy(self, book_id: str, now: datetime, session=None) -> bool:
        book = self._books.get(book_id)
        if book is None or book.available_copies >= book.total_copies:
            return False
        self._books.update(book_id, {"available_copies": book.available_copies + 1, "updated_at": now}, None)
        return True

    def _matches(self, book: Book, f: BookFilter) -> bool:
        if f.search:
            if not (_contains(book.title, f.search) or _contains(book.isbn, f.search)
                    or any(_contains(a, f.search) for a in book.authors)):
                return False
        if f.category and (book.category or "").lower() != f.category.lower(): return False
        if f.language and (book.language or "").lower() != f.language.lower(): return False
        if f.status and book.status != f.status: return False
        if f.school_id and book.school_id != f.school_id: return False
        if f.author and not any(_contains(a, f.author) for a in book.authors): return False
        if f.available_only and (book.available_copies <= 0 or book.status != BookStatus.AVAILABLE):
            return False
        return True

    async def find(self, book_filter: BookFilter) -> List[Book]:
        books = [b for b in self._books.values() if self._matches(b, book_filter)]
        books.sort(key=lambda b: b.created_at, reverse=True)
        return books[book_filter.skip:book_filter.skip + book_filter.limit]

    async def count(self, book_filter: BookFilter) -> int:
        return sum(1 for b in self._books.values() if self._matches(b, book_filter))

    async def most_borrowed(self, limit: int) -> List[Book]:
        books = sorted(self._books.values(), key=lambda b: b.borrow_count, reverse=True)
        return books[:limit]


class InMemoryMemberRepository(MemberRepository):
    def __init__(self, collection: _Collection):
        self._members = collection

    async def get(self, member_id: str, session=None) -> Optional[Member]:
        return self._members.get(member_id)

    async def get_by_user_id(self, user_id: str, session=None) -> Optional[Member]:
        return next((m for m in self._members.values() if m.user_id == user_id), None)

    async def insert(self, member: Member, session=None) -> Member:
        self._members.put(member)
        return member

    async def update(self, member_id, fields, expected_version=None, session=None) -> Optional[Member]:
        return self._members.update(member_id, fields, expected_version)

    async def delete(self, member_id: str, session=None) -> bool:
        return self._members.rows.pop(member_id, None) is not None

    async def claim_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        member = self._members.get(member_id)
        if (member is None or member.status != MemberStatus.ACTIVE
                or member.current_borrow_count >= member.max_borrow_limit):
            return False
        self._members.update(member_id, {
            "current_borrow_count": member.current_borrow_count + 1,
            "total_borrow_count": member.total_borrow_count + 1,
            "updated_at": now,
        }, None)
        return True

    async def release_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        member = self._members.get(member_id)
        if member is None or member.current_borrow_count <= 0:
            return False
        self._members.update(member_id, {
            "current_borrow_count": member.current_borrow_count - 1, "updated_at": now,
        }, None)
        return True

    async def add_fine(self, member_id, amount, now, overdue_events=0, session=None) -> bool:
        member = self._members.get(member_id)
        if member is None:
            return False
        self._members.update(member_id, {
            "fine_amount": round(member.fine_amount + amount, 2),
            "overdue_count": member.overdue_count + overdue_events,
            "updated_at": now,
        }, None)
        return True

    def _matches(self, member: Member, f: MemberFilter) -> bool:
        if f.role and member.role != f.role: return False
        if f.status and member.status != f.status: return False
        if f.school_id and member.school_id != f.school_id: return False
        if f.class_or_dept and not _contains(member.class_or_dept, f.class_or_dept): return False
        if f.search and not any(_contains(v, f.search) for v in (
                member.first_name, member.last_name, member.member_code, member.email)):
            return False
        if f.has_fines and member.fine_amount <= 0: return False
        if f.has_overdue and member.overdue_count <= 0: return False
        return True

    def _sort_key(self, f: MemberFilter):
        if f.has_fines:
            return lambda m: m.fine_amount
        if f.has_overdue:
            return lambda m: m.overdue_count
        return lambda m: m.created_at

    async def find(self, member_filter: MemberFilter) -> List[Member]:
        members = [m for m in self._members.values() if self._matches(m, member_filter)]
        members.sort(key=self._sort_key(member_filter), reverse=True)
        return members[member_filter.skip:member_filter.skip + member_filter.limit]

    async def count(self, member_filter: MemberFilter) -> int:
        return sum(1 for m in self._members.values() if self._matches(m, member_filter))

    async def statistics(self, school_id: Optional[str] = None) -> MemberStatistics:
        members = [m for m in self._members.values() if not school_id or m.school_id == school_id]
        by_status = defaultdict(int, {s: 0 for s in MemberStatus})
        by_role = defaultdict(int, {r: 0 for r in MemberRole})
        for m in members:
            by_status[m.status] += 1
            by_role[m.role] += 1
        return MemberStatistics(
            total_members=len(members),
            active_members=by_status[MemberStatus.ACTIVE],
            inactive_members=by_status[MemberStatus.INACTIVE],
            suspended_members=by_status[MemberStatus.SUSPENDED],
            students=by_role[MemberRole.STUDENT],
            teachers=by_role[MemberRole.TEACHER],
            staff=by_role[MemberRole.STAFF],
            librarians=by_role[MemberRole.LIBRARIAN],
            total_fines=round(sum(m.fine_amount for m in members), 2),
            total_borrows=sum(m.total_borrow_count for m in members),
        )


class InMemoryBorrowRepository(BorrowRepository):
    def __init__(self, collection: _Collection):
        self._records = collection

    async def get(self, record_id: str, session=None) -> Optional[BorrowRecord]:
        return self._records.get(record_id)

    async def insert(self, record: BorrowRecord, session=None) -> BorrowRecord:
        self._records.put(record)
        return record

    async def update(self, record_id, fields, expected_version=None, session=None) -> Optional[BorrowRecord]:
        return self._records.update(record_id, fields, expected_version)

    def _matches(self, r: BorrowRecord, f: BorrowFilter, now: datetime) -> bool:
        if f.overdue_only:
            if r.status not in OPEN_BORROW_STATUSES or r.due_date >= now: return False
        elif f.status and r.status != f.status:
            return False
        if f.member_id and r.member_id != f.member_id: return False
        if f.book_id and r.book_id != f.book_id: return False
        if f.school_id and r.school_id != f.school_id: return False
        if f.date_from and r.borrow_date < f.date_from: return False
        if f.date_to and r.borrow_date > f.date_to: return False
        return True

    async def find(self, borrow_filter: BorrowFilter, now: datetime) -> List[BorrowRecord]:
        records = [r for r in self._records.values() if self._matches(r, borrow_filter, now)]
        records.sort(key=lambda r: r.borrow_date, reverse=True)
        return records[borrow_filter.skip:borrow_filter.skip + borrow_filter.limit]

    async def count(self, borrow_filter: BorrowFilter, now: datetime) -> int:
        return sum(1 for r in self._records.values() if self._matches(r, borrow_filter, now))

    async def find_due_for_sweep(self, now: datetime) -> List[BorrowRecord]:
        records = [r for r in self._records.values()
                   if r.status == BorrowStatus.ISSUED and r.due_date < now]
        return sorted(records, key=lambda r: r.due_date)

    async def find_overdue(self, now: datetime, school_id: Optional[str] = None) -> List[BorrowRecord]:
        records = [r for r in self._records.values()
                   if r.status in OPEN_BORROW_STATUSES and r.due_date < now
                   and (not school_id or r.school_id == school_id)]
        return sorted(records, key=lambda r: r.due_date)

    async def find_by_status(self, status: BorrowStatus) -> List[BorrowRecord]:
        return [r for r in self._records.values() if r.status == status]

    async def statistics(self, stats_filter: StatisticsFilter) -> BorrowStatistics:
        records = [
            r for r in self._records.values()
            if (not stats_filter.school_id or r.school_id == stats_filter.school_id)
            and (not stats_filter.date_from or r.borrow_date >= stats_filter.date_from)
            and (not stats_filter.date_to or r.borrow_date <= stats_filter.date_to)
        ]
        durations = [
            (r.return_date - r.borrow_date).total_seconds() / SECONDS_PER_DAY
            for r in records if r.status == BorrowStatus.RETURNED and r.return_date
        ]
        return BorrowStatistics(
            total_borrows=len(records),
            total_returns=sum(1 for r in records if r.status == BorrowStatus.RETURNED),
            total_overdue=sum(1 for r in records if r.status == BorrowStatus.OVERDUE),
            total_lost=sum(1 for r in records if r.status == BorrowStatus.LOST),
            total_damaged=sum(1 for r in records if r.status == BorrowStatus.DAMAGED),
            total_fines=round(sum(r.fine_amount for r in records), 2),
            average_borrow_duration_days=round(sum(durations) / len(durations), 2) if durations else None,
        )

    async def member_history(self, member_id: str) -> List[StatusHistoryEntry]:
        grouped: Dict[BorrowStatus, List[BorrowRecord]] = defaultdict(list)
        for r in self._records.values():
            if r.member_id == member_id:
                grouped[r.status].append(r)
        return [
            StatusHistoryEntry(
                status=status,
                count=len(rows),
                total_fines=round(sum(r.fine_amount for r in rows), 2),
                average_days_overdue=sum(r.days_overdue for r in rows) / len(rows),
            )
            for status, rows in sorted(grouped.items(), key=lambda item: item[0].value)
        ]

    async def overdue_summary(self, due_from: datetime, due_to: datetime) -> OverdueSummary:
        rows = [r for r in self._records.values()
                if r.status == BorrowStatus.OVERDUE and due_from <= r.due_date < due_to]
        if not rows:
            return OverdueSummary()
        return OverdueSummary(
            total_overdue=len(rows),
            total_fines=round(sum(r.fine_amount for r in rows), 2),
            average_days_overdue=sum(r.days_overdue for r in rows) / len(rows),
            max_days_overdue=max(r.days_overdue for r in rows),
        )


class InMemorySequenceRepository(SequenceRepository):
    def __init__(self):
        self.values: Dict[str, int] = defaultdict(int)

    async def next_value(self, sequence_name: str, session=None) -> int:
        self.values[sequence_name] += 1
        return self.values[sequence_name]


class InMemoryUnitOfWork(UnitOfWork):
    def __init__(self):
        self._collections = {name: _Collection() for name in ("books", "members", "borrows")}
        self._lock = asyncio.Lock()
        self.books = InMemoryBookRepository(self._collections["books"])
        self.members = InMemoryMemberRepository(self._collections["members"])
        self.borrows = InMemoryBorrowRepository(self._collections["borrows"])
        self.sequences = InMemorySequenceRepository()

    @asynccontextmanager
    async def transaction(self):
        async with self._lock:
            snapshots = {name: c.snapshot() for name, c in self._collections.items()}
            sequence_snapshot = dict(self.sequences.values)
            try:
                yield None
            except BaseException:
                for name, collection in self._collections.items():
                    collection.restore(snapshots[name])
                self.sequences.values = defaultdict(int, sequence_snapshot)
                logger.debug("In-memory transaction rolled back.")
                raise

    async def ping(self) -> bool:
        return True
