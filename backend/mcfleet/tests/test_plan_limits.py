"""Tests for plan-tier server ceilings."""

import pytest

from mcfleet.core.exceptions import NotFound, QuotaExceeded
from mcfleet.schemas.plan import PlanTier
from mcfleet.services.plan_limits import PlanLimiter, all_plans, limits_for


class TestPlanTable:
    def test_tiers(self):
        plans = all_plans()
        assert (plans[PlanTier.FREE].max_servers, plans[PlanTier.FREE].max_running_servers) == (3, 1)
        assert (plans[PlanTier.PRO].max_servers, plans[PlanTier.PRO].max_running_servers) == (10, 3)
        assert plans[PlanTier.PREMIUM].max_servers is None
        assert plans[PlanTier.PREMIUM].max_running_servers == 10

    def test_unknown_tier_is_free(self):
        assert limits_for("enterprise") == limits_for(PlanTier.FREE)


class TestPlanLimiter:
    @pytest.mark.asyncio
    async def test_free_create_ceiling(self, store, account, host, make_server):
        limiter = PlanLimiter(store)
        for _ in range(2):
            await make_server(account, host)
        await limiter.check_can_create(account.id)

        await make_server(account, host)
        with pytest.raises(QuotaExceeded, match="3 servers"):
            await limiter.check_can_create(account.id)

    @pytest.mark.asyncio
    async def test_free_running_ceiling(self, store, account, host, make_server):
        limiter = PlanLimiter(store)
        await make_server(account, host, status="running")
        with pytest.raises(QuotaExceeded, match="1 concurrent"):
            await limiter.check_can_start(account.id)

    @pytest.mark.asyncio
    async def test_starting_counts_as_running(self, store, account, host, make_server):
        await make_server(account, host, status="starting")
        with pytest.raises(QuotaExceeded):
            await PlanLimiter(store).check_can_start(account.id)

    @pytest.mark.asyncio
    async def test_stopped_and_error_do_not_count(self, store, account, host, make_server):
        await make_server(account, host, status="stopped")
        await make_server(account, host, status="error")
        await PlanLimiter(store).check_can_start(account.id)

    @pytest.mark.asyncio
    async def test_premium_unlimited_servers(self, store, host, make_server):
        from mcfleet.models import Account

        premium = await store.add_account(Account(email="premium@mcfleet.local", plan_tier="premium"))
        limiter = PlanLimiter(store)
        for i in range(12):
            await make_server(premium, host, status="running" if i < 10 else "stopped")
        await limiter.check_can_create(premium.id)
        with pytest.raises(QuotaExceeded, match="10 concurrent"):
            await limiter.check_can_start(premium.id)

    @pytest.mark.asyncio
    async def test_limits_overview(self, store, account, host, make_server):
        await make_server(account, host)
        limits = await PlanLimiter(store).get_limits(account.id)
        assert limits.plan_tier == PlanTier.FREE
        assert limits.current_servers == 1
        assert limits.current_running_servers == 0
        assert limits.can_create_more is True
        assert limits.can_start_more is True

    @pytest.mark.asyncio
    async def test_unknown_account(self, store):
        with pytest.raises(NotFound):
            await PlanLimiter(store).check_can_create(999)
