# school_library/api/v1/endpoints/members.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, Path, Query, Request, Response, status
from loguru import logger

from school_library.api.deps import get_member_service
from school_library.core.rate_limiter import limiter
from school_library.models.enum import MemberRole, MemberStatus
from school_library.models.filters import MAX_PAGE_SIZE, MemberFilter
from school_library.models.member import Member, MemberPage
from school_library.models.report import MemberStatistics
from school_library.services.members import MemberService

router = APIRouter(
    tags=["Members"]
)


@router.post("", response_model=Member, status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_member(
    request: Request,
    member_in: Member.Create = Body(...),
    service: MemberService = Depends(get_member_service),
):
    logger.info(f"Registering library member for user '{member_in.user_id}' ({member_in.role.value}).")
    return await service.create_member(member_in)


@router.get("", response_model=MemberPage)
@limiter.limit("60/minute")
async def list_members(
    request: Request,
    role: Optional[MemberRole] = Query(None),
    member_status: Optional[MemberStatus] = Query(None, alias="status"),
    school_id: Optional[str] = Query(None),
    search: Optional[str] = Query(None, description="Name, member code or email"),
    class_or_dept: Optional[str] = Query(None),
    has_fines: bool = Query(False),
    has_overdue: bool = Query(False),
    skip: int = Query(0, ge=0),
    limit: int = Query(25, ge=1, le=MAX_PAGE_SIZE),
    service: MemberService = Depends(get_member_service),
):
    member_filter = MemberFilter(
        role=role, status=member_status, school_id=school_id, search=search,
        class_or_dept=class_or_dept, has_fines=has_fines, has_overdue=has_overdue,
        skip=skip, limit=limit,
    )
    return await service.list_members(member_filter)


@router.get("/statistics", response_model=MemberStatistics)
@limiter.limit("30/minute")
async def member_statistics(
    request: Request,
    school_id: Optional[str] = Query(None),
    service: MemberService = Depends(get_member_service),
):
    return await service.member_statistics(school_id)


@router.get("/{member_id}", response_model=Member)
@limiter.limit("60/minute")
async def get_member(
    request: Request,
    member_id: str = Path(...),
    service: MemberService = Depends(get_member_service),
):
    return await service.get_member(member_id)


@router.patch("/{member_id}", response_model=Member)
@limiter.limit("30/minute")
async def update_member(
    request: Request,
    member_id: str = Path(...),
    member_update: Member.Update = Body(...),
    service: MemberService = Depends(get_member_service),
):
    return await service.update_member(member_id, member_update)


@router.put("/{member_id}/status", response_model=Member)
@limiter.limit("30/minute")
async def update_member_status(
    request: Request,
    member_id: str = Path(...),
    status_update: Member.StatusUpdate = Body(...),
    service: MemberService = Depends(get_member_service),
):
    return await service.update_member_status(member_id, status_update.status)


@router.delete("/{member_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
async def delete_member(
    request: Request,
    member_id: str = Path(...),
    service: MemberService = Depends(get_member_service),
):
    await service.delete_member(member_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
