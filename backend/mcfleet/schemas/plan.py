from enum import StrEnum

from pydantic import BaseModel


class PlanTier(StrEnum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"


class PlanLimits(BaseModel):
    display_name: str
    max_servers: int | None  # None means unlimited
    max_running_servers: int


class AccountLimits(BaseModel):
    plan_tier: PlanTier
    display_name: str
    max_servers: int | None
    max_running_servers: int
    current_servers: int
    current_running_servers: int
    can_create_more: bool
    can_start_more: bool
