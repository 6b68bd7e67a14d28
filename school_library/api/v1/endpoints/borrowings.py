# school_library/api/v1/endpoints/borrowings.py
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, status
from loguru import logger

from school_library.api.deps import get_circulation_service
from school_library.core.rate_limiter import limiter
from school_library.models.borrow_record import BorrowPage, BorrowRecord
from school_library.models.enum import BorrowStatus
from school_library.models.filters import MAX_PAGE_SIZE, BorrowFilter
from school_library.services.circulation import CirculationService

router = APIRouter(
    tags=["Borrowings"]
)


# --- Issue ---
@router.post("", response_model=BorrowRecord, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def borrow_book(
    request: Request,
    borrow_in: BorrowRecord.Create = Body(...),
    service: CirculationService = Depends(get_circulation_service),
):
    """Issue one copy of a book to a member."""
    logger.info(f"Borrow request: member '{borrow_in.member_id}', book '{borrow_in.book_id}'.")
    return await service.borrow(
        member_id=borrow_in.member_id,
        book_id=borrow_in.book_id,
        due_date=borrow_in.due_date,
        borrow_days=borrow_in.borrow_days,
        note=borrow_in.note,
        issued_by=borrow_in.issued_by,
    )


# --- Ledger reads ---
@router.get("", response_model=BorrowPage)
@limiter.limit("60/minute")
async def list_borrowings(
    request: Request,
    borrow_status: Optional[BorrowStatus] = Query(None, alias="status"),
    member_id: Optional[str] = Query(None),
    book_id: Optional[str] = Query(None),
    school_id: Optional[str] = Query(None),
    overdue_only: bool = Query(False, description="Open records past their due date"),
    date_from: Optional[datetime] = Query(None, description="Borrow date lower bound"),
    date_to: Optional[datetime] = Query(None, description="Borrow date upper bound"),
    skip: int = Query(0, ge=0),
    limit: int = Query(25, ge=1, le=MAX_PAGE_SIZE),
    service: CirculationService = Depends(get_circulation_service),
):
    borrow_filter = BorrowFilter(
        status=borrow_status, member_id=member_id, book_id=book_id, school_id=school_id,
        overdue_only=overdue_only, date_from=date_from, date_to=date_to,
        skip=skip, limit=limit,
    )
    return await service.list_records(borrow_filter)


@router.get("/member/{member_id}", response_model=List[BorrowRecord])
@limiter.limit("60/minute")
async def borrowings_for_member(
    request: Request,
    member_id: str = Path(...),
    skip: int = Query(0, ge=0),
    limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.records_for_member(member_id, skip=skip, limit=limit)


@router.get("/book/{book_id}", response_model=List[BorrowRecord])
@limiter.limit("60/minute")
async def borrowings_for_book(
    request: Request,
    book_id: str = Path(...),
    skip: int = Query(0, ge=0),
    limit: int = Query(MAX_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.records_for_book(book_id, skip=skip, limit=limit)


@router.get("/{borrow_id}", response_model=BorrowRecord)
@limiter.limit("60/minute")
async def get_borrowing(
    request: Request,
    borrow_id: str = Path(...),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.get_record(borrow_id)


# --- Transitions ---
@router.post("/{borrow_id}/return", response_model=BorrowRecord)
@limiter.limit("30/minute")
async def return_book(
    request: Request,
    borrow_id: str = Path(...),
    return_in: Optional[BorrowRecord.Return] = Body(None),
    service: CirculationService = Depends(get_circulation_service),
):
    return_in = return_in or BorrowRecord.Return()
    return await service.return_book(borrow_id, returned_to=return_in.returned_to, notes=return_in.notes)


@router.put("/{borrow_id}/renew", response_model=BorrowRecord)
@limiter.limit("30/minute")
async def renew_book(
    request: Request,
    borrow_id: str = Path(...),
    renew_in: Optional[BorrowRecord.Renew] = Body(None),
    service: CirculationService = Depends(get_circulation_service),
):
    new_due_date = renew_in.new_due_date if renew_in else None
    return await service.renew_book(borrow_id, new_due_date=new_due_date)


@router.put("/{borrow_id}/lost", response_model=BorrowRecord)
@limiter.limit("30/minute")
async def mark_book_lost(
    request: Request,
    borrow_id: str = Path(...),
    lost_in: Optional[BorrowRecord.Lost] = Body(None),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.mark_lost(borrow_id, notes=lost_in.notes if lost_in else None)


@router.put("/{borrow_id}/damaged", response_model=BorrowRecord)
@limiter.limit("30/minute")
async def mark_book_damaged(
    request: Request,
    borrow_id: str = Path(...),
    damaged_in: BorrowRecord.Damaged = Body(...),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.mark_damaged(borrow_id, damaged_in.damage_description)
