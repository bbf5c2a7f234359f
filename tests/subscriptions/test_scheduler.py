"""
Tests for the billing sweep, sweep claims, grace-period expiry and the
recurring task runner.
"""

import asyncio
from datetime import date, timedelta
from decimal import Decimal

import pytest
from conftest import DECLINED_CARD, GOOD_CARD, card_payment

from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.exceptions import PaymentDeclinedError
from urbain.transit.subscriptions.models import (
    HistoryEventType,
    PaymentKind,
    PaymentPurpose,
    PaymentStatus,
    PaymentTable,
    SubscriptionStatus,
    SubscriptionTable,
)
from urbain.transit.subscriptions.scheduler import RecurringTaskRunner


@pytest.mark.integration
class TestRenewalSweep:
    """Test the renewal sweep."""

    @pytest.mark.asyncio
    async def test_nothing_due_before_end_date(self, service, clock, active_subscription):
        clock.set(date(2024, 1, 30))

        report = await service.run_billing_sweep()

        assert report.due == 0
        assert report.renewed == 0

    @pytest.mark.asyncio
    async def test_due_subscription_renewed(self, service, clock, active_subscription):
        clock.set(date(2024, 1, 31))
        sid = active_subscription.subscription_id
        payments_before = await service.list_payments(sid)
        history_before = await service.get_history(sid)

        report = await service.run_billing_sweep()

        assert report.due == 1
        assert report.renewed == 1
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.ACTIVE
        assert current.end_date == date(2024, 3, 1)
        assert current.next_billing_date == date(2024, 3, 1)

        new_payments = (await service.list_payments(sid))[len(payments_before) :]
        assert len(new_payments) == 1
        assert new_payments[0].status == PaymentStatus.SUCCEEDED
        assert new_payments[0].purpose == PaymentPurpose.RENEWAL
        assert new_payments[0].amount == Decimal("10.00")

        new_events = (await service.get_history(sid))[len(history_before) :]
        assert [e.event_type for e in new_events] == [HistoryEventType.RENEWED]
        assert new_events[0].old_status == SubscriptionStatus.ACTIVE
        assert new_events[0].new_status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_second_sweep_same_day_is_noop(self, service, clock, gateway, active_subscription):
        clock.set(date(2024, 1, 31))
        await service.run_billing_sweep()
        calls = gateway.charge_calls

        report = await service.run_billing_sweep()

        assert report.due == 0
        assert gateway.charge_calls == calls

    @pytest.mark.asyncio
    async def test_paused_subscription_not_billed(self, service, clock, active_subscription):
        await service.pause_subscription(active_subscription.subscription_id)
        clock.set(date(2024, 1, 31))

        report = await service.run_billing_sweep()

        assert report.due == 0
        current = await service.get_subscription(active_subscription.subscription_id)
        assert current.status == SubscriptionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_lapsed_without_auto_renew_expires(self, service, clock, monthly_plan):
        subscription = await service.subscribe(
            "user-1", monthly_plan.plan_id, card_payment(auto_renew=False)
        )
        clock.set(date(2024, 1, 31))
        assert (await service.run_billing_sweep()).due == 0

        clock.set(date(2024, 2, 1))
        report = await service.run_billing_sweep()

        assert report.expired == 1
        current = await service.get_subscription(subscription.subscription_id)
        assert current.status == SubscriptionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, service, clock, monthly_plan):
        healthy = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        failing = await service.subscribe(
            "user-2", monthly_plan.plan_id, card_payment("tok_soon_declined_9999")
        )
        service.gateway.decline_tokens.add("tok_soon_declined_9999")
        clock.set(date(2024, 1, 31))

        report = await service.run_billing_sweep()

        assert report.due == 2
        assert report.renewed == 1
        assert report.failed == 1
        assert (await service.get_subscription(healthy.subscription_id)).end_date == date(2024, 3, 1)
        declined = await service.get_subscription(failing.subscription_id)
        assert declined.status == SubscriptionStatus.ACTIVE
        assert declined.renewal_failed_at == date(2024, 1, 31)

    @pytest.mark.asyncio
    async def test_unexpected_error_is_isolated(self, service, clock, monkeypatch, monthly_plan):
        broken = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        fine = await service.subscribe("user-2", monthly_plan.plan_id, card_payment())
        clock.set(date(2024, 1, 31))

        original_renew = service.lifecycle.renew

        async def renew(subscription_id):
            if subscription_id == broken.subscription_id:
                raise RuntimeError("database hiccup")
            return await original_renew(subscription_id)

        monkeypatch.setattr(service.lifecycle, "renew", renew)

        report = await service.run_billing_sweep()

        assert report.errors == 1
        assert report.renewed == 1
        assert "database hiccup" in report.error_details[broken.subscription_id]
        assert (await service.get_subscription(fine.subscription_id)).end_date == date(2024, 3, 1)

    @pytest.mark.asyncio
    async def test_claim_error_is_isolated(self, service, clock, monkeypatch, monthly_plan):
        broken = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        fine = await service.subscribe("user-2", monthly_plan.plan_id, card_payment())
        clock.set(date(2024, 1, 31))

        original_claim = repository.claim_subscription

        async def claim(session, subscription_id, **kwargs):
            if subscription_id == broken.subscription_id:
                raise RuntimeError("database is locked")
            return await original_claim(session, subscription_id, **kwargs)

        monkeypatch.setattr(repository, "claim_subscription", claim)

        report = await service.run_billing_sweep()

        assert report.due == 2
        assert report.errors == 1
        assert report.renewed == 1
        assert "database is locked" in report.error_details[broken.subscription_id]
        assert (await service.get_subscription(fine.subscription_id)).end_date == date(2024, 3, 1)
        assert (await service.get_subscription(broken.subscription_id)).end_date == date(2024, 1, 31)

    @pytest.mark.asyncio
    async def test_release_error_is_isolated(self, service, clock, monkeypatch, monthly_plan):
        broken = await service.subscribe("user-1", monthly_plan.plan_id, card_payment())
        fine = await service.subscribe("user-2", monthly_plan.plan_id, card_payment())
        clock.set(date(2024, 1, 31))

        original_release = repository.release_claim

        async def release(session, subscription_id):
            if subscription_id == broken.subscription_id:
                raise RuntimeError("connection reset")
            return await original_release(session, subscription_id)

        monkeypatch.setattr(repository, "release_claim", release)

        report = await service.run_billing_sweep()

        assert report.renewed == 2
        assert report.errors == 1
        assert "connection reset" in report.error_details[broken.subscription_id]
        assert (await service.get_subscription(fine.subscription_id)).end_date == date(2024, 3, 1)

    @pytest.mark.asyncio
    async def test_renewal_in_flight_elsewhere_skipped(
        self, service, session_factory, clock, gateway, active_subscription
    ):
        clock.set(date(2024, 1, 31))
        sid = active_subscription.subscription_id
        key = f"renew:{sid}:2024-01-31:0"
        async with session_factory() as session:
            session.add(
                PaymentTable(
                    subscription_id=sid,
                    amount=Decimal("10.00"),
                    currency="USD",
                    status=PaymentStatus.PENDING,
                    kind=PaymentKind.CHARGE,
                    purpose=PaymentPurpose.RENEWAL,
                    method=active_subscription.payment_method,
                    idempotency_key=key,
                    gateway_key=key,
                    card_token=GOOD_CARD,
                    created_at=clock.now(),
                )
            )
            await session.commit()
        calls_before = gateway.charge_calls

        report = await service.run_billing_sweep()

        assert report.skipped == 1
        assert report.failed == 0
        assert report.errors == 0
        assert gateway.charge_calls == calls_before
        current = await service.get_subscription(sid)
        assert current.renewal_failed_at is None

    @pytest.mark.asyncio
    async def test_concurrent_pool_renews_all(self, service, clock, monthly_plan):
        service.scheduler.config = service.scheduler.config.model_copy(update={"max_workers": 4})
        for n in range(6):
            await service.subscribe(f"user-{n}", monthly_plan.plan_id, card_payment())
        clock.set(date(2024, 1, 31))

        report = await service.run_billing_sweep()

        assert report.due == 6
        assert report.renewed == 6


@pytest.mark.integration
class TestGracePeriod:
    """Test expiry after failed renewals."""

    @pytest.mark.asyncio
    async def test_declined_card_expires_after_grace(self, service, clock, gateway, active_subscription):
        sid = active_subscription.subscription_id
        gateway.decline_tokens.add(GOOD_CARD)

        clock.set(date(2024, 1, 31))
        first = await service.run_billing_sweep()
        assert first.failed == 1

        clock.set(date(2024, 2, 2))
        retry = await service.run_billing_sweep()
        assert retry.failed == 1
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.ACTIVE
        # grace window is measured from the first failure
        assert current.renewal_failed_at == date(2024, 1, 31)

        clock.set(date(2024, 2, 3))
        final = await service.run_billing_sweep()
        assert final.expired == 1

        expired = await service.get_subscription(sid)
        assert expired.status == SubscriptionStatus.EXPIRED
        assert expired.auto_renew is False
        history = await service.get_history(sid)
        assert [e.event_type for e in history].count(HistoryEventType.RENEWAL_FAILED) == 2
        assert history[-1].event_type == HistoryEventType.EXPIRED
        assert history[-1].metadata["reason"] == "Grace period elapsed"

    @pytest.mark.asyncio
    async def test_recovery_within_grace(self, service, clock, gateway, active_subscription):
        sid = active_subscription.subscription_id
        gateway.decline_tokens.add(GOOD_CARD)
        clock.set(date(2024, 1, 31))
        await service.run_billing_sweep()

        await service.update_payment_method(
            sid, {"card_token": "tok_fresh_7777", "card_exp_month": 8, "card_exp_year": 2029}
        )
        clock.set(date(2024, 2, 1))
        report = await service.run_billing_sweep()

        assert report.renewed == 1
        current = await service.get_subscription(sid)
        assert current.renewal_failed_at is None
        assert current.end_date == date(2024, 3, 1)

    @pytest.mark.asyncio
    async def test_grace_deadline(self, service):
        assert service.scheduler.grace_deadline(date(2024, 1, 31)) == date(2024, 2, 3)


@pytest.mark.integration
class TestSweepClaims:
    """Test that a claimed subscription is skipped by overlapping sweeps."""

    @pytest.mark.asyncio
    async def test_fresh_claim_skipped_stale_claim_taken(self, service, session_factory, clock, active_subscription):
        sid = active_subscription.subscription_id
        clock.set(date(2024, 1, 31))
        async with session_factory() as session:
            claimed = await repository.claim_subscription(
                session, sid, now=clock.now(), stale_before=clock.now() - timedelta(seconds=900)
            )
            await session.commit()
        assert claimed is True

        report = await service.run_billing_sweep()
        assert report.skipped == 1
        assert report.renewed == 0

        clock.advance(seconds=1000)
        report = await service.run_billing_sweep()
        assert report.renewed == 1

    @pytest.mark.asyncio
    async def test_claim_released_after_processing(self, service, session_factory, clock, active_subscription):
        clock.set(date(2024, 1, 31))

        await service.run_billing_sweep()

        async with session_factory() as session:
            row = await session.get(SubscriptionTable, active_subscription.subscription_id)
        assert row.claimed_at is None

    @pytest.mark.asyncio
    async def test_second_claim_refused(self, session_factory, clock, active_subscription):
        sid = active_subscription.subscription_id
        now = clock.now()
        stale_before = now - timedelta(seconds=900)

        async with session_factory() as session:
            first = await repository.claim_subscription(session, sid, now, stale_before)
            await session.commit()
        async with session_factory() as session:
            second = await repository.claim_subscription(session, sid, now, stale_before)
            await session.commit()

        assert first is True
        assert second is False


@pytest.mark.integration
class TestAbandonedCleanup:
    """Test cancellation of PENDING_PAYMENT rows that never completed."""

    async def _insert_pending(self, session_factory, clock, plan_id):
        async with session_factory() as session:
            row = SubscriptionTable(
                user_id="user-abandoned",
                plan_id=plan_id,
                status=SubscriptionStatus.PENDING_PAYMENT,
                start_date=clock.today(),
                end_date=clock.today() + timedelta(days=30),
                next_billing_date=clock.today() + timedelta(days=30),
                amount_paid=Decimal("0.00"),
                auto_renew=True,
                card_token=GOOD_CARD,
                card_exp_month=12,
                card_exp_year=2030,
                created_at=clock.now(),
                updated_at=clock.now(),
            )
            session.add(row)
            await session.commit()
            return row.subscription_id

    @pytest.mark.asyncio
    async def test_old_pending_cancelled(self, service, session_factory, clock, monthly_plan):
        sid = await self._insert_pending(session_factory, clock, monthly_plan.plan_id)
        clock.advance(days=8)

        cancelled = await service.scheduler.cleanup_abandoned_pending()

        assert cancelled == 1
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.CANCELLED
        history = await service.get_history(sid)
        assert history[-1].event_type == HistoryEventType.AUTO_CANCELLED

    @pytest.mark.asyncio
    async def test_recent_pending_left_alone(self, service, session_factory, clock, monthly_plan):
        sid = await self._insert_pending(session_factory, clock, monthly_plan.plan_id)
        clock.advance(days=2)

        assert await service.scheduler.cleanup_abandoned_pending() == 0
        current = await service.get_subscription(sid)
        assert current.status == SubscriptionStatus.PENDING_PAYMENT

    @pytest.mark.asyncio
    async def test_failed_creation_not_cancelled_again(self, service, clock, monthly_plan):
        with pytest.raises(PaymentDeclinedError):
            await service.subscribe("user-1", monthly_plan.plan_id, card_payment(DECLINED_CARD))
        clock.advance(days=30)

        assert await service.scheduler.cleanup_abandoned_pending() == 0


@pytest.mark.unit
class TestRecurringTaskRunner:
    """Test the recurring task runner."""

    @pytest.mark.asyncio
    async def test_run_once_records_result(self):
        async def job():
            return 42

        runner = RecurringTaskRunner(60, job, name="answer")

        assert await runner.run_once() == 42
        assert runner.runs == 1
        assert runner.failures == 0
        assert runner.last_result == 42
        assert runner.last_run_at is not None

    @pytest.mark.asyncio
    async def test_run_once_swallows_job_errors(self):
        async def job():
            raise RuntimeError("boom")

        runner = RecurringTaskRunner(60, job, name="broken")

        assert await runner.run_once() is None
        assert runner.failures == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        calls = []

        async def job():
            calls.append(1)

        runner = RecurringTaskRunner(0.01, job, name="ticker")
        runner.start()
        await asyncio.sleep(0.05)
        assert runner.running
        await runner.stop()

        assert not runner.running
        assert len(calls) >= 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_run_in_progress(self):
        finished = asyncio.Event()

        async def job():
            await asyncio.sleep(0.05)
            finished.set()

        runner = RecurringTaskRunner(60, job, name="slow")
        runner.start()
        await asyncio.sleep(0.01)
        await runner.stop()

        assert finished.is_set()

    def test_interval_must_be_positive(self):
        with pytest.raises(ValueError):
            RecurringTaskRunner(0, lambda: None)
