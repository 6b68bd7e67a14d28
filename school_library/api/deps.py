# school_library/api/deps.py
from functools import lru_cache

from fastapi import Depends

from school_library.core.clock import Clock, SystemClock
from school_library.core.policy import CirculationPolicy
from school_library.db import database
from school_library.repositories.base import UnitOfWork
from school_library.services.catalog import CatalogService
from school_library.services.circulation import CirculationService
from school_library.services.members import MemberService


def get_unit_of_work() -> UnitOfWork:
    return database.get_unit_of_work()


@lru_cache()
def get_clock() -> Clock:
    return SystemClock()


@lru_cache()
def get_policy() -> CirculationPolicy:
    return CirculationPolicy.from_config()


def get_catalog_service(
    uow: UnitOfWork = Depends(get_unit_of_work),
    clock: Clock = Depends(get_clock),
) -> CatalogService:
    return CatalogService(uow, clock)


def get_member_service(
    uow: UnitOfWork = Depends(get_unit_of_work),
    clock: Clock = Depends(get_clock),
    policy: CirculationPolicy = Depends(get_policy),
) -> MemberService:
    return MemberService(uow, clock, policy)


def get_circulation_service(
    uow: UnitOfWork = Depends(get_unit_of_work),
    clock: Clock = Depends(get_clock),
    policy: CirculationPolicy = Depends(get_policy),
) -> CirculationService:
    return CirculationService(uow, clock, policy)
