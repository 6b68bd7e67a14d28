# school_library/models/filters.py
"""Typed query filters, one per list/aggregate operation.

Unset fields do not constrain the query.
"""
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from school_library.core.utils import UTCDateTime
from school_library.models.enum import BookStatus, BorrowStatus, MemberRole, MemberStatus

MAX_PAGE_SIZE = 200


class _DateRange(BaseModel):
    date_from: Optional[UTCDateTime] = None
    date_to: Optional[UTCDateTime] = None

    @model_validator(mode="after")
    def check_range(self):
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class BookFilter(BaseModel):
    search: Optional[str] = Field(None, description="Matches title, authors or ISBN (case-insensitive)")
    category: Optional[str] = None
    language: Optional[str] = None
    status: Optional[BookStatus] = None
    school_id: Optional[str] = None
    author: Optional[str] = None
    available_only: bool = False
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=25, ge=1, le=MAX_PAGE_SIZE)


class MemberFilter(BaseModel):
    role: Optional[MemberRole] = None
    status: Optional[MemberStatus] = None
    school_id: Optional[str] = None
    search: Optional[str] = Field(None, description="Matches name, member code or email")
    class_or_dept: Optional[str] = None
    has_fines: bool = False
    has_overdue: bool = False
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=25, ge=1, le=MAX_PAGE_SIZE)


class BorrowFilter(_DateRange):
    status: Optional[BorrowStatus] = None
    member_id: Optional[str] = None
    book_id: Optional[str] = None
    school_id: Optional[str] = None
    # due date passed and still ISSUED/OVERDUE; overrides status
    overdue_only: bool = False
    skip: int = Field(default=0, ge=0)
    limit: int = Field(default=25, ge=1, le=MAX_PAGE_SIZE)


class StatisticsFilter(_DateRange):
    school_id: Optional[str] = None
