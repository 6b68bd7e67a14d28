# school_library/models/borrow_record.py
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from school_library.core.utils import UTCDateTime, utcnow
from school_library.models.enum import BorrowStatus


class BorrowRecord(BaseModel):
    """Ledger entry: one lending of one copy, and its state machine."""
    id: str
    member_id: str
    book_id: str
    school_id: Optional[str] = None
    borrow_date: UTCDateTime = Field(default_factory=utcnow)
    due_date: UTCDateTime
    original_due_date: Optional[UTCDateTime] = None
    return_date: Optional[UTCDateTime] = None
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
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    # --- Pydantic Schemas for API ---
    class Create(BaseModel):
        member_id: str = Field(..., min_length=1)
        book_id: str = Field(..., min_length=1)
        due_date: Optional[UTCDateTime] = Field(None, description="Explicit due date (ISO 8601)")
        borrow_days: Optional[int] = Field(None, description="Alternative to due_date")
        note: Optional[str] = Field(None, max_length=500)
        issued_by: Optional[str] = None

        @model_validator(mode="after")
        def check_due(self):
            if self.due_date is None and self.borrow_days is None:
                raise ValueError("Either due_date or borrow_days is required")
            return self

    class Return(BaseModel):
        returned_to: Optional[str] = None
        notes: Optional[str] = Field(None, max_length=500)

    class Renew(BaseModel):
        new_due_date: Optional[UTCDateTime] = None

    class Lost(BaseModel):
        notes: Optional[str] = Field(None, max_length=500)

    class Damaged(BaseModel):
        damage_description: str = Field(..., min_length=1, max_length=500)

        @field_validator("damage_description")
        @classmethod
        def not_blank(cls, v: str) -> str:
            if not v.strip():
                raise ValueError("damage_description must not be blank")
            return v.strip()


class BorrowPage(BaseModel):
    items: List[BorrowRecord]
    total: int
    skip: int
    limit: int
