# school_library/api/v1/endpoints/reports.py
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query, Request

from school_library.api.deps import get_circulation_service, get_clock, get_policy, get_unit_of_work
from school_library.core.clock import Clock
from school_library.core.policy import CirculationPolicy
from school_library.core.rate_limiter import limiter
from school_library.models.borrow_record import BorrowRecord
from school_library.models.filters import StatisticsFilter
from school_library.models.report import BorrowStatistics, StatusHistoryEntry, SweepResult
from school_library.repositories.base import UnitOfWork
from school_library.scheduler.jobs import sweep_overdue
from school_library.services.circulation import CirculationService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/reports",
    tags=["Reports"]
)


# --- 1. Overdue list ---
@router.get("/overdue", response_model=List[BorrowRecord], summary="Get Open Borrowings Past Due")
@limiter.limit("30/minute")
async def get_overdue_borrowings(
    request: Request,
    school_id: Optional[str] = Query(None),
    service: CirculationService = Depends(get_circulation_service),
):
    """Open records (ISSUED or OVERDUE) whose due date has passed, oldest due first."""
    return await service.overdue_records(school_id)


# --- 2. Ledger statistics ---
@router.get("/statistics", response_model=BorrowStatistics, summary="Borrowing Statistics")
@limiter.limit("30/minute")
async def get_borrow_statistics(
    request: Request,
    school_id: Optional[str] = Query(None),
    date_from: Optional[datetime] = Query(None, description="Borrow date lower bound"),
    date_to: Optional[datetime] = Query(None, description="Borrow date upper bound"),
    service: CirculationService = Depends(get_circulation_service),
):
    stats_filter = StatisticsFilter(school_id=school_id, date_from=date_from, date_to=date_to)
    return await service.statistics(stats_filter)


# --- 3. Member history ---
@router.get(
    "/member/{member_id}/history",
    response_model=List[StatusHistoryEntry],
    summary="Member Borrowing History by Status"
)
@limiter.limit("30/minute")
async def get_member_history(
    request: Request,
    member_id: str = Path(...),
    service: CirculationService = Depends(get_circulation_service),
):
    return await service.member_history(member_id)


# --- 4. Manual overdue sweep ---
@router.post("/overdue-sweep", response_model=SweepResult, summary="Run the Overdue Sweep Now")
@limiter.limit("5/minute")
async def run_overdue_sweep(
    request: Request,
    uow: UnitOfWork = Depends(get_unit_of_work),
    clock: Clock = Depends(get_clock),
    policy: CirculationPolicy = Depends(get_policy),
):
    logger.info("Manual overdue sweep requested.")
    return await sweep_overdue(uow, clock, policy)
