# school_library/core/policy.py
from pydantic import BaseModel, Field

from school_library.core import config


class CirculationPolicy(BaseModel):
    """Fine rates and limits used by circulation and the overdue sweep."""
    daily_fine_rate: float = Field(default=1.0, ge=0)
    max_renewals: int = Field(default=2, ge=0)
    renewal_days: int = Field(default=14, ge=1)
    replacement_cost: float = Field(default=25.0, ge=0)
    damage_cost: float = Field(default=15.0, ge=0)
    default_borrow_limit: int = Field(default=3, ge=1)
    max_borrow_days: int = Field(default=90, ge=1)

    @classmethod
    def from_config(cls) -> "CirculationPolicy":
        return cls(
            daily_fine_rate=config.LIB_DAILY_FINE_RATE,
            max_renewals=config.LIB_MAX_RENEWALS,
            renewal_days=config.LIB_RENEWAL_DAYS,
            replacement_cost=config.LIB_REPLACEMENT_COST,
            damage_cost=config.LIB_DAMAGE_COST,
            default_borrow_limit=config.LIB_DEFAULT_BORROW_LIMIT,
            max_borrow_days=config.LIB_MAX_BORROW_DAYS,
        )

    def overdue_fine(self, days_overdue: int) -> float:
        return round(days_overdue * self.daily_fine_rate, 2)
