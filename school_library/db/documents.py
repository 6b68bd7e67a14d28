# school_library/db/documents.py
"""Beanie documents: collection names, field types and indexes.

References to other documents are stored as ObjectId hex strings.
"""
from typing import List, Optional
from datetime import datetime

from beanie import Document
from pydantic import Field
from pymongo import IndexModel, ASCENDING, DESCENDING

from school_library.models.enum import BookStatus, BorrowStatus, MemberRole, MemberStatus


class BookDocument(Document):
    title: str
    authors: List[str] = Field(default_factory=list)
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    category: Optional[str] = None
    language: Optional[str] = None
    location: Optional[str] = None
    school_id: Optional[str] = None
    total_copies: int = Field(default=1, ge=0)
    available_copies: int = Field(default=1, ge=0)
    status: BookStatus = BookStatus.AVAILABLE
    borrow_count: int = 0
    reservation_count: int = 0
    version: int = 0
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "books"
        indexes = [
            IndexModel(
                [("isbn", ASCENDING)], name="book_isbn_unique_index", unique=True,
                partialFilterExpression={"isbn": {"$type": "string"}},
            ),
            IndexModel([("category", ASCENDING), ("status", ASCENDING)], name="book_category_status_index"),
            IndexModel([("school_id", ASCENDING), ("status", ASCENDING)], name="book_school_status_index"),
            IndexModel([("borrow_count", DESCENDING)], name="book_borrow_count_index"),
        ]


class MemberDocument(Document):
    member_code: str
    user_id: str
    role: MemberRole
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone_number: Optional[str] = None
    class_or_dept: Optional[str] = None
    school_id: Optional[str] = None
    max_borrow_limit: int = 3
    current_borrow_count: int = 0
    total_borrow_count: int = 0
    overdue_count: int = 0
    fine_amount: float = 0.0
    status: MemberStatus = MemberStatus.ACTIVE
    notes: Optional[str] = None
    join_date: datetime
    expiry_date: Optional[datetime] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "library_members"
        indexes = [
            IndexModel([("user_id", ASCENDING)], name="member_user_id_unique_index", unique=True),
            IndexModel([("member_code", ASCENDING)], name="member_code_unique_index", unique=True),
            IndexModel([("school_id", ASCENDING), ("status", ASCENDING)], name="member_school_status_index"),
            IndexModel([("role", ASCENDING), ("status", ASCENDING)], name="member_role_status_index"),
        ]


class BorrowRecordDocument(Document):
    member_id: str
    book_id: str
    school_id: Optional[str] = None
    borrow_date: datetime
    due_date: datetime
    original_due_date: Optional[datetime] = None
    return_date: Optional[datetime] = None
    status: BorrowStatus = BorrowStatus.ISSUED
    fine_amount: float = 0.0
    days_overdue: int = 0
    is_renewed: bool = False
    renewal_count: int = 0
    damage_description: Optional[str] = None
    note: Optional[str] = None
    return_notes: Optional[str] = None
    issued_by: Optional[str] = None
    returned_to: Optional[str] = None
    version: int = 0
    created_at: datetime
    updated_at: datetime

    class Settings:
        name = "borrow_records"
        indexes = [
            IndexModel([("member_id", ASCENDING), ("status", ASCENDING)], name="borrow_member_status_index"),
            IndexModel([("book_id", ASCENDING), ("status", ASCENDING)], name="borrow_book_status_index"),
            IndexModel([("school_id", ASCENDING), ("status", ASCENDING)], name="borrow_school_status_index"),
            IndexModel([("due_date", ASCENDING), ("status", ASCENDING)], name="borrow_due_status_index"),
            IndexModel([("borrow_date", DESCENDING)], name="borrow_date_index"),
            IndexModel([("return_date", ASCENDING)], name="borrow_return_date_index", sparse=True),
        ]


class SequenceCounter(Document):
    """Holds the last issued value of a named sequence (name is the _id)."""
    value: int = 0

    class Settings:
        name = "sequence_counters"
