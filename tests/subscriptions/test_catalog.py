"""
Tests for the plan catalog.
"""

from decimal import Decimal

import pytest

from urbain.transit.subscriptions.catalog import PlanCatalog
from urbain.transit.subscriptions.exceptions import (
    DuplicatePlanError,
    InvalidRequestError,
    PlanNotFoundError,
)


def plan_payload(code: str = "weekly", **overrides):
    payload = {
        "code": code,
        "name": "Weekly Pass",
        "duration_days": 7,
        "price": Decimal("3.50"),
        "currency": "eur",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def catalog(session_factory):
    return PlanCatalog(session_factory)


@pytest.mark.integration
class TestPlanCatalog:
    """Test plan creation and lookup."""

    @pytest.mark.asyncio
    async def test_create_normalizes_codes(self, catalog):
        plan = await catalog.create_plan(plan_payload())

        assert plan.code == "WEEKLY"
        assert plan.currency == "EUR"
        assert plan.price == Decimal("3.50")
        assert plan.is_active is True
        assert plan.features == []

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, catalog):
        await catalog.create_plan(plan_payload())

        with pytest.raises(DuplicatePlanError) as exc_info:
            await catalog.create_plan(plan_payload("WEEKLY", name="Another"))

        assert exc_info.value.status_code == 409

    @pytest.mark.asyncio
    async def test_invalid_plan_rejected(self, catalog):
        with pytest.raises(InvalidRequestError) as exc_info:
            await catalog.create_plan(plan_payload(duration_days=0, currency="euro"))

        assert set(exc_info.value.errors) == {"duration_days", "currency"}

    @pytest.mark.asyncio
    async def test_lookup_by_id_and_code(self, catalog):
        plan = await catalog.create_plan(plan_payload())

        assert (await catalog.get_plan(plan.plan_id)).code == "WEEKLY"
        assert (await catalog.get_plan_by_code("weekly")).plan_id == plan.plan_id

    @pytest.mark.asyncio
    async def test_unknown_plan(self, catalog):
        with pytest.raises(PlanNotFoundError):
            await catalog.get_plan("missing")
        with pytest.raises(PlanNotFoundError):
            await catalog.get_plan_by_code("missing")

    @pytest.mark.asyncio
    async def test_deactivate_hides_plan(self, catalog):
        weekly = await catalog.create_plan(plan_payload())
        await catalog.create_plan(plan_payload("annual", duration_days=365, price=Decimal("99.00")))

        retired = await catalog.deactivate_plan(weekly.plan_id)

        assert retired.is_active is False
        assert [p.code for p in await catalog.list_plans()] == ["ANNUAL"]
        assert [p.code for p in await catalog.list_plans(active_only=False)] == ["WEEKLY", "ANNUAL"]
        assert await catalog.count_active_plans() == 1
        with pytest.raises(PlanNotFoundError):
            await catalog.get_purchasable_plan(weekly.plan_id)

    @pytest.mark.asyncio
    async def test_deactivate_is_idempotent(self, catalog):
        plan = await catalog.create_plan(plan_payload())

        await catalog.deactivate_plan(plan.plan_id)
        again = await catalog.deactivate_plan(plan.plan_id)

        assert again.is_active is False
