# school_library/models/member.py
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

from school_library.core.utils import UTCDateTime, utcnow
from school_library.models.enum import MemberRole, MemberStatus


class Member(BaseModel):
    """A borrower. Counters are written only by circulation and the overdue sweep."""
    id: str
    member_code: str
    user_id: str
    role: MemberRole
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone_number: Optional[str] = None
    class_or_dept: Optional[str] = None
    school_id: Optional[str] = None
    max_borrow_limit: int = Field(default=3, ge=0)
    current_borrow_count: int = Field(default=0, ge=0)
    total_borrow_count: int = 0
    overdue_count: int = 0
    fine_amount: float = 0.0
    status: MemberStatus = MemberStatus.ACTIVE
    notes: Optional[str] = None
    join_date: UTCDateTime = Field(default_factory=utcnow)
    expiry_date: Optional[UTCDateTime] = None
    version: int = 0
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.member_code

    # --- Pydantic Schemas for API ---
    class Create(BaseModel):
        user_id: str = Field(..., min_length=1)
        role: MemberRole
        first_name: Optional[str] = Field(None, max_length=100)
        last_name: Optional[str] = Field(None, max_length=100)
        email: Optional[EmailStr] = None
        phone_number: Optional[str] = Field(None, max_length=30)
        class_or_dept: Optional[str] = None
        school_id: Optional[str] = None
        # Falls back to LIB_DEFAULT_BORROW_LIMIT when omitted
        max_borrow_limit: Optional[int] = Field(None, ge=0, le=50)
        expiry_date: Optional[UTCDateTime] = None
        notes: Optional[str] = None

    class Update(BaseModel):
        first_name: Optional[str] = Field(None, max_length=100)
        last_name: Optional[str] = Field(None, max_length=100)
        email: Optional[EmailStr] = None
        phone_number: Optional[str] = Field(None, max_length=30)
        class_or_dept: Optional[str] = None
        max_borrow_limit: Optional[int] = Field(None, ge=0, le=50)
        expiry_date: Optional[UTCDateTime] = None
        notes: Optional[str] = None

        @field_validator("max_borrow_limit")
        @classmethod
        def reject_null_limit(cls, v):
            if v is None:
                raise ValueError("max_borrow_limit may be omitted but not set to null")
            return v

    class StatusUpdate(BaseModel):
        status: MemberStatus


class MemberPage(BaseModel):
    items: List[Member]
    total: int
    skip: int
    limit: int
