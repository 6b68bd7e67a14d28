# school_library/models/book.py
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator

from school_library.core.utils import UTCDateTime, utcnow
from school_library.models.enum import BookStatus


class Book(BaseModel):
    """Catalog record. Copy counters are written only by circulation."""
    id: str
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
    # Librarian-set flag; circulation never changes it
    status: BookStatus = BookStatus.AVAILABLE
    borrow_count: int = 0
    reservation_count: int = 0
    version: int = 0
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @property
    def borrowed_copies(self) -> int:
        return self.total_copies - self.available_copies

    # --- Pydantic Schemas for API ---
    class Create(BaseModel):
        title: str = Field(..., min_length=1, max_length=300)
        authors: List[str] = Field(..., min_length=1)
        isbn: Optional[str] = Field(None, max_length=20)
        publisher: Optional[str] = None
        category: Optional[str] = None
        language: Optional[str] = None
        location: Optional[str] = Field(None, max_length=100, description="Shelf / rack label")
        school_id: Optional[str] = None
        total_copies: int = Field(default=1, ge=1)

        @field_validator("authors")
        @classmethod
        def strip_authors(cls, v: List[str]) -> List[str]:
            authors = [a.strip() for a in v if a and a.strip()]
            if not authors:
                raise ValueError("At least one author is required")
            return authors

    class Update(BaseModel):
        title: Optional[str] = Field(None, min_length=1, max_length=300)
        authors: Optional[List[str]] = None
        isbn: Optional[str] = Field(None, max_length=20)
        publisher: Optional[str] = None
        category: Optional[str] = None
        language: Optional[str] = None
        location: Optional[str] = Field(None, max_length=100)
        total_copies: Optional[int] = Field(None, ge=1)

        @field_validator("title", "authors", "total_copies")
        @classmethod
        def reject_null(cls, v):
            if v is None:
                raise ValueError("Field may be omitted but not set to null")
            return v

    class StatusUpdate(BaseModel):
        status: BookStatus


class BookPage(BaseModel):
    items: List[Book]
    total: int
    skip: int
    limit: int

