# school_library/services/members.py
from typing import Optional

from loguru import logger

from school_library.core.clock import Clock
from school_library.core.exceptions import ConcurrencyConflictError, InvalidStateError, NotFoundError
from school_library.core.policy import CirculationPolicy
from school_library.core.utils import format_member_code, new_object_id
from school_library.models.enum import MemberStatus
from school_library.models.filters import MemberFilter
from school_library.models.member import Member, MemberPage
from school_library.models.report import MemberStatistics
from school_library.repositories.base import UnitOfWork

MEMBER_CODE_SEQUENCE = "library_member_code"


class MemberService:
    """Member directory. Borrow and fine counters are left to circulation."""

    def __init__(self, uow: UnitOfWork, clock: Clock, policy: CirculationPolicy):
        self.uow = uow
        self.clock = clock
        self.policy = policy

    async def get_member(self, member_id: str, session=None) -> Member:
        member = await self.uow.members.get(member_id, session=session)
        if not member:
            logger.info(f"Member lookup failed for ID '{member_id}'.")
            raise NotFoundError(f"Member with ID '{member_id}' not found.")
        return member

    async def create_member(self, data: Member.Create) -> Member:
        now = self.clock.now()
        async with self.uow.transaction() as session:
            if await self.uow.members.get_by_user_id(data.user_id, session=session):
                raise InvalidStateError(f"User '{data.user_id}' is already a library member.")
            sequence_value = await self.uow.sequences.next_value(MEMBER_CODE_SEQUENCE, session=session)
            member_data = data.model_dump(exclude={"max_borrow_limit"})
            member = Member(
                id=new_object_id(),
                member_code=format_member_code(sequence_value),
                max_borrow_limit=(
                    data.max_borrow_limit if data.max_borrow_limit is not None
                    else self.policy.default_borrow_limit
                ),
                join_date=now,
                created_at=now,
                updated_at=now,
                **member_data,
            )
            await self.uow.members.insert(member, session=session)
        logger.info(f"Member '{member.member_code}' created for user '{member.user_id}'.")
        return member

    async def list_members(self, member_filter: MemberFilter) -> MemberPage:
        items = await self.uow.members.find(member_filter)
        total = await self.uow.members.count(member_filter)
        return MemberPage(items=items, total=total, skip=member_filter.skip, limit=member_filter.limit)

    async def _apply_update(self, member_id: str, fields: dict) -> Member:
        async with self.uow.transaction() as session:
            member = await self.get_member(member_id, session=session)
            fields["updated_at"] = self.clock.now()
            updated = await self.uow.members.update(
                member_id, fields, expected_version=member.version, session=session
            )
            if not updated:
                raise ConcurrencyConflictError(f"Member '{member_id}' was modified concurrently. Please retry.")
        return updated

    async def update_member(self, member_id: str, data: Member.Update) -> Member:
        update_data = data.model_dump(exclude_unset=True)
        if not update_data:
            return await self.get_member(member_id)
        updated = await self._apply_update(member_id, update_data)
        logger.info(f"Member '{member_id}' updated: {sorted(update_data)}.")
        return updated

    async def update_member_status(self, member_id: str, status: MemberStatus) -> Member:
        updated = await self._apply_update(member_id, {"status": status})
        logger.info(f"Member '{member_id}' status set to {status.value}.")
        return updated

    async def delete_member(self, member_id: str) -> None:
        async with self.uow.transaction() as session:
            member = await self.get_member(member_id, session=session)
            if member.current_borrow_count > 0:
                raise InvalidStateError("Cannot delete member with borrowed books.")
            if member.fine_amount > 0:
                raise InvalidStateError("Cannot delete member with unpaid fines.")
            await self.uow.members.delete(member_id, session=session)
        logger.info(f"Member '{member_id}' deleted.")

    async def member_statistics(self, school_id: Optional[str] = None) -> MemberStatistics:
        return await self.uow.members.statistics(school_id)
