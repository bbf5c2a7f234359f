"""
Tests for the service facade: reporting, boundary validation, startup
reconciliation and history queries.
"""

from datetime import UTC, date, datetime, timedelta
from decimal import Decimal

import pytest
from conftest import GOOD_CARD, card_payment

from urbain.transit.subscriptions.exceptions import (
    InvalidRequestError,
    SubscriptionNotFoundError,
)
from urbain.transit.subscriptions.gateway import MOCK_WEBHOOK_SECRET, sign_webhook_payload
from urbain.transit.subscriptions.models import (
    HistoryEventType,
    PaymentKind,
    PaymentMethod,
    PaymentPurpose,
    PaymentStatus,
    PaymentTable,
    SubscriptionStatus,
    SubscriptionTable,
)

UNKNOWN_ID = "00000000-0000-0000-0000-000000000000"


@pytest.mark.integration
class TestStatistics:
    """Test aggregate reporting."""

    @pytest.mark.asyncio
    async def test_empty_statistics(self, service):
        stats = await service.get_statistics()

        assert stats.total_subscriptions == 0
        assert stats.by_status == {}
        assert stats.net_revenue == Decimal("0.00")

    @pytest.mark.asyncio
    async def test_revenue_nets_out_refunds(self, service, monthly_plan):
        kept = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        refunded = await service.subscribe("user-2", monthly_plan.plan_id, card_payment())
        await service.cancel_subscription(refunded.subscription_id, refund_requested=True)

        stats = await service.get_statistics()

        assert stats.total_subscriptions == 2
        assert stats.by_status == {"ACTIVE": 1, "CANCELLED": 1}
        assert stats.active_plans == 1
        assert stats.charged_total == Decimal("20.00")
        assert stats.refunded_total == Decimal("10.00")
        assert stats.net_revenue == Decimal("10.00")
        assert stats.history_by_type["CANCELLED"] == 1
        assert kept.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_statistics_serialize(self, service, active_subscription):
        data = (await service.get_statistics()).to_dict()

        assert data["charged_total"] == "10.00"
        assert data["by_status"] == {"ACTIVE": 1}


@pytest.mark.integration
class TestBoundaryValidation:
    """Test input checks at the service boundary."""

    @pytest.mark.asyncio
    async def test_invalid_create_payload_lists_fields(self, service, monthly_plan):
        with pytest.raises(InvalidRequestError) as exc_info:
            await service.create_subscription(
                {
                    "user_id": "",
                    "plan_id": monthly_plan.plan_id,
                    "payment": {"card_token": GOOD_CARD, "card_exp_month": 13, "card_exp_year": 2030},
                }
            )

        errors = exc_info.value.errors
        assert "user_id" in errors
        assert "payment.card_exp_month" in errors
        assert exc_info.value.status_code == 422

    @pytest.mark.asyncio
    async def test_blank_subscription_id_rejected(self, service):
        with pytest.raises(InvalidRequestError):
            await service.get_subscription("  ")

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.get_subscription(UNKNOWN_ID)

    @pytest.mark.asyncio
    async def test_history_of_unknown_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.get_history(UNKNOWN_ID)

    @pytest.mark.asyncio
    async def test_payments_of_unknown_subscription(self, service):
        with pytest.raises(SubscriptionNotFoundError):
            await service.list_payments(UNKNOWN_ID)

    @pytest.mark.asyncio
    async def test_list_by_user_requires_user(self, service):
        with pytest.raises(InvalidRequestError):
            await service.list_by_user("")


@pytest.mark.integration
class TestStartup:
    """Test reconciliation of work interrupted by a restart."""

    async def _insert_interrupted_create(
        self, session_factory, clock, plan, age=timedelta(minutes=5)
    ):
        async with session_factory() as session:
            subscription = SubscriptionTable(
                user_id="user-restart",
                plan_id=plan.plan_id,
                status=SubscriptionStatus.PENDING_PAYMENT,
                start_date=clock.today(),
                end_date=clock.today() + timedelta(days=plan.duration_days),
                next_billing_date=clock.today() + timedelta(days=plan.duration_days),
                amount_paid=Decimal("0.00"),
                auto_renew=True,
                card_token=GOOD_CARD,
                card_exp_month=12,
                card_exp_year=2030,
                created_at=clock.now(),
                updated_at=clock.now(),
            )
            session.add(subscription)
            await session.flush()
            session.add(
                PaymentTable(
                    subscription_id=subscription.subscription_id,
                    amount=plan.price,
                    currency=plan.currency,
                    status=PaymentStatus.PENDING,
                    kind=PaymentKind.CHARGE,
                    purpose=PaymentPurpose.INITIAL,
                    method=PaymentMethod.CARD,
                    idempotency_key="initial:interrupted",
                    gateway_key="initial:interrupted",
                    card_token=GOOD_CARD,
                    created_at=clock.now() - age,
                )
            )
            await session.commit()
            return subscription.subscription_id

    @pytest.mark.asyncio
    async def test_startup_finishes_interrupted_create(
        self, service, session_factory, clock, monthly_plan
    ):
        sid = await self._insert_interrupted_create(session_factory, clock, monthly_plan)

        summary = await service.startup(start_scheduler=False)

        assert summary["payments_resolved"] == 1
        assert summary["activated"] == 1
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.qr_code_data
        payments = await service.list_payments(sid)
        assert [p.status for p in payments] == [PaymentStatus.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_startup_leaves_fresh_pending_charge(
        self, service, session_factory, clock, gateway, monthly_plan
    ):
        sid = await self._insert_interrupted_create(
            session_factory, clock, monthly_plan, age=timedelta(seconds=1)
        )

        summary = await service.startup(start_scheduler=False)

        assert summary["payments_resolved"] == 0
        assert summary["untouched"] == 1
        assert gateway.charge_calls == 0
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_startup_with_nothing_pending(self, service, active_subscription):
        summary = await service.startup(start_scheduler=False)

        assert summary == {"activated": 0, "failed": 0, "untouched": 0, "payments_resolved": 0}

    @pytest.mark.asyncio
    async def test_startup_starts_and_shutdown_stops_runners(self, service):
        await service.startup(start_scheduler=True)
        runners = list(service._runners)

        assert len(runners) == 2
        assert all(runner.running for runner in runners)

        await service.shutdown()
        assert not any(runner.running for runner in runners)


@pytest.mark.integration
class TestHistoryQueries:
    """Test history lookups across subscriptions."""

    @pytest.mark.asyncio
    async def test_history_between(self, service, clock, monthly_plan):
        first = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        clock.set(date(2024, 1, 10))
        await service.pause_subscription(first.subscription_id)

        january_first = datetime(2024, 1, 1, tzinfo=UTC)
        events = await service.get_history_between(
            january_first, january_first + timedelta(days=1)
        )
        later = await service.get_history_between(
            datetime(2024, 1, 9, tzinfo=UTC), datetime(2024, 1, 11, tzinfo=UTC)
        )

        assert HistoryEventType.PAUSED not in [e.event_type for e in events]
        assert HistoryEventType.ACTIVATED in [e.event_type for e in events]
        assert [e.event_type for e in later] == [HistoryEventType.PAUSED]

    @pytest.mark.asyncio
    async def test_list_plans(self, service, monthly_plan):
        plans = await service.list_plans()

        assert [p.code for p in plans] == ["MONTHLY"]
        assert (await service.get_plan(monthly_plan.plan_id)).price == Decimal("10.00")


@pytest.mark.asyncio
async def test_verify_webhook_delegates_to_gateway(service):
    payload = b'{"event": "charge.succeeded"}'

    assert service.verify_webhook(payload, sign_webhook_payload(MOCK_WEBHOOK_SECRET, payload))
    assert service.verify_webhook(payload, "sig") is False
    assert service.verify_webhook(payload, None) is False
