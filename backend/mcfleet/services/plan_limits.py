from mcfleet.core.exceptions import NotFound, QuotaExceeded
from mcfleet.schemas.plan import AccountLimits, PlanLimits, PlanTier
from mcfleet.services.store import ServerStore

PLAN_LIMITS: dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(display_name="Free", max_servers=3, max_running_servers=1),
    PlanTier.PRO: PlanLimits(display_name="Pro", max_servers=10, max_running_servers=3),
    PlanTier.PREMIUM: PlanLimits(display_name="Premium", max_servers=None, max_running_servers=10),
}


def limits_for(tier: str | PlanTier) -> PlanLimits:
    """Unknown tiers fall back to the free plan."""
    try:
        return PLAN_LIMITS[PlanTier(tier)]
    except ValueError:
        return PLAN_LIMITS[PlanTier.FREE]


def all_plans() -> dict[PlanTier, PlanLimits]:
    return dict(PLAN_LIMITS)


class PlanLimiter:
    def __init__(self, store: ServerStore):
        self.store = store

    async def _tier(self, account_id: int) -> PlanTier:
        account = await self.store.get_account(account_id)
        if account is None:
            raise NotFound("Account not found")
        try:
            return PlanTier(account.plan_tier)
        except ValueError:
            return PlanTier.FREE

    async def check_can_create(self, account_id: int) -> None:
        tier = await self._tier(account_id)
        limits = PLAN_LIMITS[tier]
        if limits.max_servers is None:
            return
        count = await self.store.count_servers(account_id)
        if count >= limits.max_servers:
            raise QuotaExceeded(
                f"Server limit reached. Your {limits.display_name} plan allows "
                f"{limits.max_servers} servers."
            )

    async def check_can_start(self, account_id: int) -> None:
        tier = await self._tier(account_id)
        limits = PLAN_LIMITS[tier]
        running = await self.store.count_active_servers(account_id)
        if running >= limits.max_running_servers:
            raise QuotaExceeded(
                f"Running server limit reached. Your {limits.display_name} plan allows "
                f"{limits.max_running_servers} concurrent running servers."
            )

    async def get_limits(self, account_id: int) -> AccountLimits:
        tier = await self._tier(account_id)
        limits = PLAN_LIMITS[tier]
        count = await self.store.count_servers(account_id)
        running = await self.store.count_active_servers(account_id)
        return AccountLimits(
            plan_tier=tier,
            display_name=limits.display_name,
            max_servers=limits.max_servers,
            max_running_servers=limits.max_running_servers,
            current_servers=count,
            current_running_servers=running,
            can_create_more=limits.max_servers is None or count < limits.max_servers,
            can_start_more=running < limits.max_running_servers,
        )
