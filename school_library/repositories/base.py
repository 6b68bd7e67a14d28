# school_library/repositories/base.py
"""Storage interfaces used by the services.

Every write accepts an optional ``session`` so it can join the transaction
opened by :meth:`UnitOfWork.transaction`. Guarded writes return ``False`` /
``None`` instead of raising when their guard does not match; the caller
decides whether that is a conflict.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, AsyncContextManager, Dict, List, Optional

from school_library.models.book import Book
from school_library.models.borrow_record import BorrowRecord
from school_library.models.enum import BorrowStatus
from school_library.models.filters import BookFilter, BorrowFilter, MemberFilter, StatisticsFilter
from school_library.models.member import Member
from school_library.models.report import (
    BorrowStatistics, MemberStatistics, OverdueSummary, StatusHistoryEntry
)


class BookRepository(ABC):
    @abstractmethod
    async def get(self, book_id: str, session=None) -> Optional[Book]: ...

    @abstractmethod
    async def get_by_isbn(self, isbn: str, session=None) -> Optional[Book]: ...

    @abstractmethod
    async def insert(self, book: Book, session=None) -> Book: ...

    @abstractmethod
    async def update(
        self, book_id: str, fields: Dict[str, Any], expected_version: Optional[int] = None, session=None
    ) -> Optional[Book]:
        """Set ``fields`` and bump the version. None if missing or the version moved."""

    @abstractmethod
    async def delete(self, book_id: str, session=None) -> bool: ...

    @abstractmethod
    async def take_copy(self, book_id: str, now: datetime, session=None) -> bool:
        """available_copies -= 1, borrow_count += 1, only if a copy is free and status is AVAILABLE."""

    @abstractmethod
    async def return_copy(self, book_id: str, now: datetime, session=None) -> bool:
        """available_copies += 1, only while below total_copies."""

    @abstractmethod
    async def find(self, book_filter: BookFilter) -> List[Book]: ...

    @abstractmethod
    async def count(self, book_filter: BookFilter) -> int: ...

    @abstractmethod
    async def most_borrowed(self, limit: int) -> List[Book]: ...


class MemberRepository(ABC):
    @abstractmethod
    async def get(self, member_id: str, session=None) -> Optional[Member]: ...

    @abstractmethod
    async def get_by_user_id(self, user_id: str, session=None) -> Optional[Member]: ...

    @abstractmethod
    async def insert(self, member: Member, session=None) -> Member: ...

    @abstractmethod
    async def update(
        self, member_id: str, fields: Dict[str, Any], expected_version: Optional[int] = None, session=None
    ) -> Optional[Member]: ...

    @abstractmethod
    async def delete(self, member_id: str, session=None) -> bool: ...

    @abstractmethod
    async def claim_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        """current/total_borrow_count += 1, only if ACTIVE and below max_borrow_limit."""

    @abstractmethod
    async def release_borrow_slot(self, member_id: str, now: datetime, session=None) -> bool:
        """current_borrow_count -= 1, only while above zero."""

    @abstractmethod
    async def add_fine(
        self, member_id: str, amount: float, now: datetime, overdue_events: int = 0, session=None
    ) -> bool: ...

    @abstractmethod
    async def find(self, member_filter: MemberFilter) -> List[Member]: ...

    @abstractmethod
    async def count(self, member_filter: MemberFilter) -> int: ...

    @abstractmethod
    async def statistics(self, school_id: Optional[str] = None) -> MemberStatistics: ...


class BorrowRepository(ABC):
    @abstractmethod
    async def get(self, record_id: str, session=None) -> Optional[BorrowRecord]: ...

    @abstractmethod
    async def insert(self, record: BorrowRecord, session=None) -> BorrowRecord: ...

    @abstractmethod
    async def update(
        self, record_id: str, fields: Dict[str, Any], expected_version: Optional[int] = None, session=None
    ) -> Optional[BorrowRecord]: ...

    @abstractmethod
    async def find(self, borrow_filter: BorrowFilter, now: datetime) -> List[BorrowRecord]:
        """Newest borrow_date first."""

    @abstractmethod
    async def count(self, borrow_filter: BorrowFilter, now: datetime) -> int: ...

    @abstractmethod
    async def find_due_for_sweep(self, now: datetime) -> List[BorrowRecord]:
        """ISSUED entries whose due_date is before ``now``."""

    @abstractmethod
    async def find_overdue(self, now: datetime, school_id: Optional[str] = None) -> List[BorrowRecord]:
        """ISSUED/OVERDUE entries past due, oldest due date first."""

    @abstractmethod
    async def find_by_status(self, status: BorrowStatus) -> List[BorrowRecord]: ...

    @abstractmethod
    async def statistics(self, stats_filter: StatisticsFilter) -> BorrowStatistics: ...

    @abstractmethod
    async def member_history(self, member_id: str) -> List[StatusHistoryEntry]: ...

    @abstractmethod
    async def overdue_summary(self, due_from: datetime, due_to: datetime) -> OverdueSummary: ...


class SequenceRepository(ABC):
    @abstractmethod
    async def next_value(self, sequence_name: str, session=None) -> int: ...


class UnitOfWork(ABC):
    """Groups the repositories with the transaction boundary they share."""
    books: BookRepository
    members: MemberRepository
    borrows: BorrowRepository
    sequences: SequenceRepository

    @abstractmethod
    def transaction(self) -> AsyncContextManager[Any]:
        """Yield a session; every write made with it commits or rolls back together."""

    @abstractmethod
    async def ping(self) -> bool: ...

    async def close(self) -> None:
        return None
