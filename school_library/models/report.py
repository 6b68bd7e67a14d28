# school_library/models/report.py
from typing import Optional

from pydantic import BaseModel, Field

from school_library.models.enum import BorrowStatus


class BorrowStatistics(BaseModel):
    """Ledger totals for the statistics report."""
    total_borrows: int = 0
    total_returns: int = 0
    total_overdue: int = 0
    total_lost: int = 0
    total_damaged: int = 0
    total_fines: float = 0.0
    # Returned records only
    average_borrow_duration_days: Optional[float] = None


class StatusHistoryEntry(BaseModel):
    """One row of a member's borrowing history, grouped by status."""
    status: BorrowStatus
    count: int
    total_fines: float = 0.0
    average_days_overdue: float = 0.0


class MemberStatistics(BaseModel):
    total_members: int = 0
    active_members: int = 0
    inactive_members: int = 0
    suspended_members: int = 0
    students: int = 0
    teachers: int = 0
    staff: int = 0
    librarians: int = 0
    total_fines: float = 0.0
    total_borrows: int = 0


class OverdueSummary(BaseModel):
    """Aggregate logged by the monthly overdue report."""
    total_overdue: int = 0
    total_fines: float = 0.0
    average_days_overdue: float = 0.0
    max_days_overdue: int = 0


class SweepResult(BaseModel):
    scanned: int = 0
    marked: int = 0
    skipped: int = Field(default=0, description="No longer ISSUED-and-past-due when re-read")
    failed: int = 0
