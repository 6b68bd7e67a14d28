# school_library/core/utils.py
import math
from datetime import datetime, timezone
from typing import Annotated, Optional

from bson import ObjectId
from pydantic import AfterValidator

SECONDS_PER_DAY = 24 * 60 * 60


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (as returned by Mongo without tz_aware) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]


def days_late(due_date: datetime, now: datetime) -> int:
    """Whole days past due, rounded up. Zero when not past due."""
    delta = (ensure_utc(now) - ensure_utc(due_date)).total_seconds()
    if delta <= 0:
        return 0
    return math.ceil(delta / SECONDS_PER_DAY)


def new_object_id() -> str:
    return str(ObjectId())


def is_valid_object_id(value: Optional[str]) -> bool:
    return bool(value) and ObjectId.is_valid(value)


def format_member_code(sequence_value: int) -> str:
    return f"MBR-{sequence_value:06d}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
