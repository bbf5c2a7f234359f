"""
Subscription service.

The public operation surface. Inputs are validated at this boundary and every
method returns a snapshot (or a list/result model) or raises a typed
``SubscriptionBillingError``.
"""

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.db import get_session_factory
from urbain.transit.events import EventBus
from urbain.transit.settings import Settings, settings as default_settings
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.catalog import PlanCatalog
from urbain.transit.subscriptions.clock import Clock, SystemClock
from urbain.transit.subscriptions.gateway import PaymentGateway, build_gateway
from urbain.transit.subscriptions.history import HistoryLedger
from urbain.transit.subscriptions.lifecycle import SubscriptionLifecycle
from urbain.transit.subscriptions.metrics import SubscriptionMetrics, get_subscription_metrics
from urbain.transit.subscriptions.models import (
    HistoryEvent,
    PaymentKind,
    PaymentRecord,
    Plan,
    SubscriptionSnapshot,
)
from urbain.transit.subscriptions.payments import PaymentProcessor
from urbain.transit.subscriptions.qrcode import QRCodeIssuer
from urbain.transit.subscriptions.scheduler import BillingScheduler, RecurringTaskRunner
from urbain.transit.subscriptions.schemas import (
    CancelSubscriptionRequest,
    CreateSubscriptionRequest,
    PaymentDetails,
    PlanCreateRequest,
    QRValidationResult,
    SubscriptionStatistics,
    SweepReport,
    UpdatePaymentMethodRequest,
)
from urbain.transit.subscriptions.validation import (
    ensure_valid,
    parse_model,
    validate_identifier,
)

logger = structlog.get_logger(__name__)


class SubscriptionService:
    """Facade wiring the catalog, payments, lifecycle, sweep, QR and history."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        gateway: PaymentGateway | None = None,
        config: Settings | None = None,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        metrics: SubscriptionMetrics | None = None,
    ) -> None:
        self.config = config or default_settings
        self.session_factory = session_factory or get_session_factory()
        self.clock = clock or SystemClock()
        self.gateway = gateway or build_gateway(self.config)
        self.metrics = metrics or get_subscription_metrics()

        self.catalog = PlanCatalog(self.session_factory)
        self.ledger = HistoryLedger(self.session_factory)
        self.payments = PaymentProcessor(
            self.session_factory,
            self.gateway,
            config=self.config.subscriptions,
            clock=self.clock,
            event_bus=event_bus,
            metrics=self.metrics,
        )
        self.qr_issuer = QRCodeIssuer(
            self.session_factory,
            config=self.config.qr,
            clock=self.clock,
            grace_period_days=self.config.subscriptions.grace_period_days,
        )
        self.lifecycle = SubscriptionLifecycle(
            self.session_factory,
            catalog=self.catalog,
            payments=self.payments,
            ledger=self.ledger,
            qr_issuer=self.qr_issuer,
            config=self.config.subscriptions,
            clock=self.clock,
            event_bus=event_bus,
            metrics=self.metrics,
        )
        self.scheduler = BillingScheduler(
            self.session_factory,
            self.lifecycle,
            config=self.config.scheduler,
            subscription_config=self.config.subscriptions,
            clock=self.clock,
            metrics=self.metrics,
        )
        self._runners: list[RecurringTaskRunner] = []

    # ==================== Process lifecycle ====================

    async def startup(self, start_scheduler: bool | None = None) -> dict[str, int]:
        """Reconcile interrupted work, then optionally start the recurring sweep."""
        resolved = await self.payments.reconcile_pending()
        summary = await self.lifecycle.reconcile()
        summary["payments_resolved"] = len(resolved)

        if start_scheduler is None:
            start_scheduler = self.config.scheduler.enabled
        if start_scheduler and not self._runners:
            interval = self.config.scheduler.renewal_interval_seconds
            self._runners = [
                RecurringTaskRunner(interval, self.scheduler.run_sweep, "renewal-sweep", self.clock),
                RecurringTaskRunner(
                    interval, self.scheduler.cleanup_abandoned_pending, "pending-cleanup", self.clock
                ),
            ]
            for runner in self._runners:
                runner.start()

        logger.info("subscriptions.started", **summary)
        return summary

    async def shutdown(self) -> None:
        for runner in self._runners:
            await runner.stop()
        self._runners = []
        await self.gateway.close()

    # ==================== Plans ====================

    async def create_plan(self, request: PlanCreateRequest | dict[str, Any]) -> Plan:
        return await self.catalog.create_plan(request)

    async def get_plan(self, plan_id: str) -> Plan:
        return await self.catalog.get_plan(plan_id)

    async def list_plans(self, active_only: bool = True) -> list[Plan]:
        return await self.catalog.list_plans(active_only=active_only)

    # ==================== Subscriptions ====================

    async def create_subscription(
        self, request: CreateSubscriptionRequest | dict[str, Any]
    ) -> SubscriptionSnapshot:
        data = parse_model(CreateSubscriptionRequest, request)
        return await self.lifecycle.create(data.user_id, data.plan_id, data.payment)

    async def subscribe(
        self, user_id: str, plan_id: str, payment: PaymentDetails | dict[str, Any]
    ) -> SubscriptionSnapshot:
        """Positional form of ``create_subscription``."""
        return await self.create_subscription(
            CreateSubscriptionRequest(
                user_id=user_id, plan_id=plan_id, payment=parse_model(PaymentDetails, payment)
            )
        )

    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        ensure_valid(validate_identifier(subscription_id, "subscription_id"))
        return await self.lifecycle.get(subscription_id)

    async def list_by_user(
        self, user_id: str, include_deleted: bool = False
    ) -> list[SubscriptionSnapshot]:
        ensure_valid(validate_identifier(user_id, "user_id"))
        return await self.lifecycle.list_for_user(user_id, include_deleted=include_deleted)

    async def cancel_subscription(
        self,
        subscription_id: str,
        reason: str | None = None,
        refund_requested: bool = False,
    ) -> SubscriptionSnapshot:
        data = parse_model(
            CancelSubscriptionRequest, {"reason": reason, "refund_requested": refund_requested}
        )
        return await self.lifecycle.cancel(
            subscription_id, reason=data.reason, refund_requested=data.refund_requested
        )

    async def renew_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        return await self.lifecycle.renew(subscription_id)

    async def pause_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        return await self.lifecycle.pause(subscription_id)

    async def resume_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        return await self.lifecycle.resume(subscription_id)

    async def update_payment_method(
        self, subscription_id: str, request: UpdatePaymentMethodRequest | dict[str, Any]
    ) -> SubscriptionSnapshot:
        data = parse_model(UpdatePaymentMethodRequest, request)
        return await self.lifecycle.update_payment_method(subscription_id, data)

    # ==================== QR codes ====================

    async def generate_qr_code(self, subscription_id: str) -> SubscriptionSnapshot:
        return await self.lifecycle.attach_qr_code(subscription_id)

    async def validate_qr_code(self, token: str) -> QRValidationResult:
        return await self.qr_issuer.validate(token)

    # ==================== Payments and history ====================

    async def list_payments(self, subscription_id: str) -> list[PaymentRecord]:
        await self.lifecycle.get(subscription_id)
        return await self.payments.list_payments(subscription_id)

    async def get_history(self, subscription_id: str) -> list[HistoryEvent]:
        await self.lifecycle.get(subscription_id)
        return await self.ledger.list_for_subscription(subscription_id)

    async def get_history_between(self, start: datetime, end: datetime) -> list[HistoryEvent]:
        return await self.ledger.list_between(start, end)

    def verify_webhook(self, payload: str | bytes, signature: str | None) -> bool:
        return self.payments.verify_webhook(payload, signature)

    async def run_billing_sweep(self) -> SweepReport:
        return await self.scheduler.run_sweep()

    async def get_statistics(self) -> SubscriptionStatistics:
        """Totals by status, active plans and revenue (succeeded charges minus refunds)."""
        async with self.session_factory() as session:
            by_status = await repository.count_subscriptions_by_status(session)
            charged = await repository.sum_succeeded_amount(session, PaymentKind.CHARGE)
            refunded = await repository.sum_succeeded_amount(session, PaymentKind.REFUND)
        history_by_type = await self.ledger.count_by_type()

        return SubscriptionStatistics(
            total_subscriptions=sum(by_status.values()),
            by_status=by_status,
            active_plans=await self.catalog.count_active_plans(),
            charged_total=charged,
            refunded_total=refunded,
            net_revenue=charged - refunded,
            history_by_type=history_by_type,
        )


__all__ = ["SubscriptionService"]
