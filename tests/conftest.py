import os
from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("STORAGE_BACKEND", "memory")

from school_library.core.policy import CirculationPolicy  # noqa: E402
from school_library.models.book import Book  # noqa: E402
from school_library.models.enum import MemberRole  # noqa: E402
from school_library.models.member import Member  # noqa: E402
from school_library.repositories.memory import InMemoryUnitOfWork  # noqa: E402
from school_library.services.catalog import CatalogService  # noqa: E402
from school_library.services.circulation import CirculationService  # noqa: E402
from school_library.services.members import MemberService  # noqa: E402

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return MutableClock(START)


@pytest.fixture
def policy():
    return CirculationPolicy()


@pytest.fixture
def uow():
    return InMemoryUnitOfWork()


@pytest.fixture
def catalog(uow, clock):
    return CatalogService(uow, clock)


@pytest.fixture
def members(uow, clock, policy):
    return MemberService(uow, clock, policy)


@pytest.fixture
def circulation(uow, clock, policy):
    return CirculationService(uow, clock, policy)


@pytest.fixture
def make_book(catalog):
    async def _make(**overrides) -> Book:
        data = {"title": "The Hobbit", "authors": ["J. R. R. Tolkien"], "total_copies": 1}
        data.update(overrides)
        return await catalog.create_book(Book.Create(**data))
    return _make


@pytest.fixture
def make_member(members):
    user_ids = count(1)

    async def _make(**overrides) -> Member:
        data = {
            "user_id": f"user-{next(user_ids)}",
            "role": MemberRole.STUDENT,
            "first_name": "Ada",
            "last_name": "Lovelace",
        }
        data.update(overrides)
        return await members.create_member(Member.Create(**data))
    return _make
