"""
Subscription lifecycle state machine.

Every status change goes through ``ALLOWED_TRANSITIONS`` and is committed
together with exactly one history row. Writers of one subscription are
serialized by a per-subscription asyncio lock; across processes the
``version`` column turns a lost race into ``ConcurrentModificationError``.
"""

from collections.abc import Callable
from datetime import date, timedelta
from decimal import Decimal
from typing import Any
from uuid import uuid4

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from urbain.transit.events import EventBus
from urbain.transit.settings import SubscriptionSettings, settings
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.catalog import PlanCatalog
from urbain.transit.subscriptions.clock import Clock, SystemClock
from urbain.transit.subscriptions.events import (
    SubscriptionEvents,
    emit_status_changed,
    emit_subscription_cancelled,
    emit_subscription_created,
    emit_subscription_renewed,
)
from urbain.transit.subscriptions.exceptions import (
    AlreadyRefundedError,
    ConcurrentModificationError,
    DuplicateSubscriptionError,
    IllegalStateTransitionError,
    PaymentDeclinedError,
    SubscriptionNotFoundError,
)
from urbain.transit.subscriptions.history import HistoryLedger
from urbain.transit.subscriptions.locks import KeyedLock
from urbain.transit.subscriptions.mappers import mask_card_token, subscription_from_row
from urbain.transit.subscriptions.metrics import SubscriptionMetrics, get_subscription_metrics
from urbain.transit.subscriptions.models import (
    HistoryEventType,
    PaymentMethod,
    PaymentPurpose,
    PaymentRecord,
    PaymentStatus,
    Plan,
    SubscriptionSnapshot,
    SubscriptionStatus,
    SubscriptionTable,
)
from urbain.transit.subscriptions.payments import PaymentProcessor, raise_for_payment
from urbain.transit.subscriptions.qrcode import QRCodeIssuer
from urbain.transit.subscriptions.schemas import PaymentDetails, UpdatePaymentMethodRequest
from urbain.transit.subscriptions.validation import (
    ensure_valid,
    is_card_expired,
    validate_card,
    validate_reason,
)

logger = structlog.get_logger(__name__)

Status = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    Status.PENDING_PAYMENT: frozenset({Status.ACTIVE, Status.CANCELLED}),
    Status.ACTIVE: frozenset({Status.ACTIVE, Status.PAUSED, Status.CANCELLED, Status.EXPIRED}),
    Status.PAUSED: frozenset({Status.ACTIVE, Status.CANCELLED, Status.EXPIRED}),
    Status.CANCELLED: frozenset(),
    Status.EXPIRED: frozenset(),
}


def ensure_transition(
    current: SubscriptionStatus,
    requested: SubscriptionStatus,
    subscription_id: str | None = None,
) -> None:
    """Raise ``IllegalStateTransitionError`` unless ``current -> requested`` is allowed."""
    if requested not in ALLOWED_TRANSITIONS[current]:
        raise IllegalStateTransitionError(
            f"Cannot move subscription from {current.value} to {requested.value}",
            current_state=current.value,
            requested_state=requested.value,
            subscription_id=subscription_id,
        )


RowMutation = Callable[[SubscriptionTable], None]


class SubscriptionLifecycle:
    """Create, renew, pause, resume, cancel and expire subscriptions."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        payments: PaymentProcessor,
        ledger: HistoryLedger,
        qr_issuer: QRCodeIssuer,
        config: SubscriptionSettings | None = None,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        metrics: SubscriptionMetrics | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.catalog = catalog
        self.payments = payments
        self.ledger = ledger
        self.qr_issuer = qr_issuer
        self.config = config or settings.subscriptions
        self.clock = clock or SystemClock()
        self.event_bus = event_bus
        self.metrics = metrics or get_subscription_metrics()
        self._locks = KeyedLock()

    # ==================== Internal Helpers ====================

    async def _load(self, subscription_id: str) -> SubscriptionSnapshot:
        async with self.session_factory() as session:
            row = await repository.get_subscription_row(session, subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription_id} not found", subscription_id=subscription_id
            )
        return subscription_from_row(row)

    async def _apply(
        self,
        subscription_id: str,
        new_status: SubscriptionStatus,
        event_type: HistoryEventType,
        mutate: RowMutation | None = None,
        metadata: dict[str, Any] | None = None,
        expected_version: int | None = None,
        allowed_from: frozenset[SubscriptionStatus] | None = None,
    ) -> tuple[SubscriptionSnapshot, SubscriptionStatus]:
        """
        Apply one transition in one commit with one history row.

        Returns the new snapshot and the status it left.
        """
        async with self.session_factory() as session:
            row = await repository.get_subscription_row(session, subscription_id)
            if row is None:
                raise SubscriptionNotFoundError(
                    f"Subscription {subscription_id} not found", subscription_id=subscription_id
                )
            if expected_version is not None and row.version != expected_version:
                raise ConcurrentModificationError(
                    f"Subscription {subscription_id} changed concurrently",
                    subscription_id=subscription_id,
                    expected_version=expected_version,
                )

            old_status = row.status
            if allowed_from is not None and old_status not in allowed_from:
                raise IllegalStateTransitionError(
                    f"Cannot move subscription from {old_status.value} to {new_status.value}",
                    current_state=old_status.value,
                    requested_state=new_status.value,
                    subscription_id=subscription_id,
                )
            if old_status != new_status or new_status == Status.ACTIVE:
                ensure_transition(old_status, new_status, subscription_id)

            version = row.version
            row.status = new_status
            row.updated_at = self.clock.now()
            if mutate is not None:
                mutate(row)

            self.ledger.record(
                session,
                subscription_id=subscription_id,
                old_status=old_status,
                new_status=new_status,
                event_type=event_type,
                timestamp=self.clock.now(),
                metadata=metadata,
                user_id=row.user_id,
            )
            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentModificationError(
                    f"Subscription {subscription_id} changed concurrently",
                    subscription_id=subscription_id,
                    expected_version=version,
                ) from exc

            snapshot = subscription_from_row(row)

        self.metrics.record_transition(event_type.value)
        logger.info(
            f"subscription.{event_type.value.lower()}",
            subscription_id=subscription_id,
            old_status=old_status.value,
            new_status=new_status.value,
            version=snapshot.version,
        )
        return snapshot, old_status

    async def _charge_with_retries(
        self,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        base_key: str,
        card_token: str | None,
        method: PaymentMethod,
        purpose: PaymentPurpose,
        billing_cycle_start: date | None,
    ) -> PaymentRecord:
        """
        Charge under ``base_key``, retrying transient failures as new attempts.

        Each retry is its own payment row (``<base_key>:retry<n>``) but sends the
        provider the same ``base_key``, so a timed-out capture that actually went
        through is returned by the provider instead of charged again. Replaying
        the whole sequence is deterministic and makes no new gateway calls.

        Raises:
            TransientGatewayError: An attempt is still PENDING under another caller
            PaymentDeclinedError: Declined, or transient failures exhausted the retries
        """
        last: PaymentRecord | None = None
        for attempt in range(self.config.max_transient_retries + 1):
            key = base_key if attempt == 0 else f"{base_key}:retry{attempt}"
            record = await self.payments.charge(
                subscription_id=subscription_id,
                amount=amount,
                currency=currency,
                idempotency_key=key,
                card_token=card_token,
                method=method,
                purpose=purpose,
                billing_cycle_start=billing_cycle_start,
                gateway_key=base_key,
            )
            if record.succeeded:
                return record
            if record.status == PaymentStatus.PENDING:
                # Another caller holds this attempt; its outcome is not ours to guess
                raise_for_payment(record, subscription_id)
            last = record
            if record.status == PaymentStatus.FAILED and not record.failure_transient:
                break
            logger.warning(
                "payment.transient_failure",
                subscription_id=subscription_id,
                idempotency_key=key,
                attempt=attempt + 1,
                reason=record.failure_reason,
            )

        assert last is not None
        reason = last.failure_reason or "declined"
        if last.failure_transient:
            reason = f"{reason} (gave up after {self.config.max_transient_retries} retries)"
        raise PaymentDeclinedError(
            f"Payment declined: {reason}",
            payment_id=last.payment_id,
            failure_reason=reason,
            subscription_id=subscription_id,
        )

    # ==================== Queries ====================

    async def get(self, subscription_id: str) -> SubscriptionSnapshot:
        return await self._load(subscription_id)

    async def list_for_user(
        self, user_id: str, include_deleted: bool = False
    ) -> list[SubscriptionSnapshot]:
        async with self.session_factory() as session:
            rows = await repository.list_subscription_rows_for_user(
                session, user_id, include_deleted=include_deleted
            )
        return [subscription_from_row(row) for row in rows]

    # ==================== Create ====================

    async def create(
        self, user_id: str, plan_id: str, payment: PaymentDetails
    ) -> SubscriptionSnapshot:
        """
        Create a subscription and capture its first period.

        The row is written as PENDING_PAYMENT before the charge. On success it
        becomes ACTIVE with a QR token; on failure it is kept, soft-deleted, as
        an audit record and ``PaymentDeclinedError`` is raised.
        """
        plan = await self.catalog.get_purchasable_plan(plan_id)
        today = self.clock.today()
        ensure_valid(
            validate_card(payment.card_token, payment.card_exp_month, payment.card_exp_year, today),
            "Invalid payment details",
        )

        async with self._locks.hold(f"user:{user_id}:plan:{plan.plan_id}"):
            base_key: str | None = None
            if payment.idempotency_key:
                base_key = f"initial:{payment.idempotency_key}"
                prior = await self.payments.find_by_key(base_key)
                if prior is not None:
                    return await self._replay_create(prior.subscription_id, plan, base_key)

            subscription_id = str(uuid4())
            base_key = base_key or f"initial:{subscription_id}"

            duplicate = DuplicateSubscriptionError(
                f"User {user_id} already has a live subscription to plan {plan.code}",
                user_id=user_id,
                plan_id=plan.plan_id,
            )
            async with self.session_factory() as session:
                if await repository.find_live_subscription(session, user_id, plan.plan_id):
                    raise duplicate

                end_date = today + timedelta(days=plan.duration_days)
                now = self.clock.now()
                row = SubscriptionTable(
                    subscription_id=subscription_id,
                    user_id=user_id,
                    plan_id=plan.plan_id,
                    status=Status.PENDING_PAYMENT,
                    start_date=today,
                    end_date=end_date,
                    next_billing_date=end_date,
                    amount_paid=Decimal("0.00"),
                    auto_renew=payment.auto_renew,
                    payment_method=payment.payment_method,
                    card_token=payment.card_token,
                    card_exp_month=payment.card_exp_month,
                    card_exp_year=payment.card_exp_year,
                    created_at=now,
                    updated_at=now,
                )
                session.add(row)
                self.ledger.record(
                    session,
                    subscription_id=subscription_id,
                    old_status=None,
                    new_status=Status.PENDING_PAYMENT,
                    event_type=HistoryEventType.CREATED,
                    timestamp=now,
                    metadata={"plan_id": plan.plan_id, "plan_code": plan.code},
                    user_id=user_id,
                )
                try:
                    await session.commit()
                except IntegrityError as exc:
                    # Another process created a live row after our check
                    await session.rollback()
                    logger.info(
                        "subscription.duplicate_race_lost", user_id=user_id, plan_id=plan.plan_id
                    )
                    raise duplicate from exc

            logger.info(
                "subscription.pending",
                subscription_id=subscription_id,
                user_id=user_id,
                plan_code=plan.code,
            )
            return await self._complete_creation(subscription_id, plan, base_key)

    async def _complete_creation(
        self, subscription_id: str, plan: Plan, base_key: str
    ) -> SubscriptionSnapshot:
        async with self.session_factory() as session:
            row = await repository.get_subscription_row(session, subscription_id)
        assert row is not None

        try:
            record = await self._charge_with_retries(
                subscription_id=subscription_id,
                amount=plan.price,
                currency=plan.currency,
                base_key=base_key,
                card_token=row.card_token,
                method=row.payment_method,
                purpose=PaymentPurpose.INITIAL,
                billing_cycle_start=row.start_date,
            )
        except PaymentDeclinedError as exc:
            await self._fail_creation(subscription_id, exc.payment_id, exc.failure_reason)
            raise

        return await self._activate(subscription_id, plan, record)

    async def _replay_create(
        self, subscription_id: str, plan: Plan, base_key: str
    ) -> SubscriptionSnapshot:
        async with self._locks.hold(subscription_id):
            snapshot = await self._load(subscription_id)
            if snapshot.status != Status.PENDING_PAYMENT:
                return snapshot
            if snapshot.deleted_at is None:
                return await self._complete_creation(subscription_id, plan, base_key)

        failed = [
            p for p in await self.payments.list_payments(subscription_id) if not p.succeeded
        ]
        last = failed[-1] if failed else None
        raise PaymentDeclinedError(
            "Payment declined",
            payment_id=last.payment_id if last else None,
            failure_reason=last.failure_reason if last else None,
            subscription_id=subscription_id,
        )

    async def _activate(
        self, subscription_id: str, plan: Plan, payment: PaymentRecord
    ) -> SubscriptionSnapshot:
        token = self.qr_issuer.issue(subscription_id)

        def mutate(row: SubscriptionTable) -> None:
            row.amount_paid = payment.amount
            row.qr_code_data = token

        snapshot, _ = await self._apply(
            subscription_id,
            Status.ACTIVE,
            HistoryEventType.ACTIVATED,
            mutate=mutate,
            metadata={"payment_id": payment.payment_id, "amount": str(payment.amount)},
            allowed_from=frozenset({Status.PENDING_PAYMENT}),
        )
        await emit_subscription_created(
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            plan_id=plan.plan_id,
            amount=payment.amount,
            currency=plan.currency,
            end_date=snapshot.end_date.isoformat(),
            event_bus=self.event_bus,
        )
        return snapshot

    async def _fail_creation(
        self, subscription_id: str, payment_id: str | None, reason: str | None
    ) -> None:
        """Close out a PENDING_PAYMENT row whose first charge failed."""
        async with self.session_factory() as session:
            row = await repository.get_subscription_row(session, subscription_id)
            if row is None or row.status != Status.PENDING_PAYMENT or row.deleted_at is not None:
                return
            now = self.clock.now()
            row.deleted_at = now
            row.updated_at = now
            self.ledger.record(
                session,
                subscription_id=subscription_id,
                old_status=Status.PENDING_PAYMENT,
                new_status=Status.PENDING_PAYMENT,
                event_type=HistoryEventType.CREATION_FAILED,
                timestamp=now,
                metadata={"payment_id": payment_id, "failure_reason": reason},
                user_id=row.user_id,
            )
            await session.commit()

        self.metrics.record_transition(HistoryEventType.CREATION_FAILED.value)
        logger.warning(
            "subscription.creation_failed",
            subscription_id=subscription_id,
            payment_id=payment_id,
            reason=reason,
        )

    # ==================== Cancel ====================

    async def cancel(
        self,
        subscription_id: str,
        reason: str | None = None,
        refund_requested: bool = False,
    ) -> SubscriptionSnapshot:
        """Cancel an ACTIVE or PAUSED subscription, optionally refunding its last charge."""
        ensure_valid(validate_reason(reason))

        def mutate(row: SubscriptionTable) -> None:
            row.auto_renew = False
            row.deleted_at = self.clock.now()

        async with self._locks.hold(subscription_id):
            snapshot, old_status = await self._apply(
                subscription_id,
                Status.CANCELLED,
                HistoryEventType.CANCELLED,
                mutate=mutate,
                metadata={"reason": reason, "refund_requested": refund_requested},
                allowed_from=frozenset({Status.ACTIVE, Status.PAUSED}),
            )

            refund_payment_id = None
            if refund_requested:
                refund_payment_id = await self._refund_last_charge(subscription_id, reason)

        await emit_subscription_cancelled(
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            reason=reason,
            refund_payment_id=refund_payment_id,
            event_bus=self.event_bus,
        )
        return snapshot

    async def _refund_last_charge(self, subscription_id: str, reason: str | None) -> str | None:
        last = await self.payments.last_successful_charge(subscription_id)
        if last is None:
            logger.info("subscription.refund_skipped", subscription_id=subscription_id)
            return None
        try:
            refund = await self.payments.refund(last.payment_id, reason or "Subscription cancelled")
        except AlreadyRefundedError as exc:
            logger.info(
                "subscription.refund_exists",
                subscription_id=subscription_id,
                payment_id=last.payment_id,
                refund_payment_id=exc.context.get("refund_payment_id"),
            )
            return exc.context.get("refund_payment_id")

        if not refund.succeeded:
            logger.error(
                "subscription.refund_failed",
                subscription_id=subscription_id,
                refund_payment_id=refund.payment_id,
                reason=refund.failure_reason,
            )
        return refund.payment_id

    # ==================== Renew ====================

    async def renew(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        Charge the next period of an ACTIVE auto-renewing subscription.

        The payment key is ``renew:<id>:<cycle_start>:<attempt>`` where attempt
        is the number of failed renewal payments already recorded for the
        cycle, so a retried renewal after a crash resumes the same attempt and a
        renewal after a decline starts a fresh one.
        """
        async with self._locks.hold(subscription_id):
            current = await self._load(subscription_id)
            if current.status != Status.ACTIVE or current.deleted_at is not None:
                raise IllegalStateTransitionError(
                    f"Only ACTIVE subscriptions can be renewed (status {current.status.value})",
                    current_state=current.status.value,
                    requested_state=Status.ACTIVE.value,
                    subscription_id=subscription_id,
                )
            if not current.auto_renew:
                raise IllegalStateTransitionError(
                    "Auto-renew is disabled for this subscription",
                    current_state=current.status.value,
                    requested_state=Status.ACTIVE.value,
                    subscription_id=subscription_id,
                )

            cycle_start = current.next_billing_date or current.end_date
            if cycle_start > self.clock.today():
                raise IllegalStateTransitionError(
                    f"Subscription is not due for renewal until {cycle_start.isoformat()}",
                    current_state=current.status.value,
                    requested_state=Status.ACTIVE.value,
                    subscription_id=subscription_id,
                )
            plan = await self.catalog.get_plan(current.plan_id)

            async with self.session_factory() as session:
                row = await repository.get_subscription_row(session, subscription_id)
            assert row is not None
            if is_card_expired(row.card_exp_month, row.card_exp_year, self.clock.today()):
                reason = "Stored card is expired"
                await self._record_renewal_failure(subscription_id, None, reason, current.version)
                raise PaymentDeclinedError(
                    f"Payment declined: {reason}",
                    failure_reason=reason,
                    subscription_id=subscription_id,
                )

            attempt = await self.payments.count_failed_renewals(subscription_id, cycle_start)
            base_key = f"renew:{subscription_id}:{cycle_start.isoformat()}:{attempt}"

            try:
                payment = await self._charge_with_retries(
                    subscription_id=subscription_id,
                    amount=plan.price,
                    currency=plan.currency,
                    base_key=base_key,
                    card_token=row.card_token,
                    method=row.payment_method,
                    purpose=PaymentPurpose.RENEWAL,
                    billing_cycle_start=cycle_start,
                )
            except PaymentDeclinedError as exc:
                await self._record_renewal_failure(
                    subscription_id, exc.payment_id, exc.failure_reason, current.version
                )
                raise

            old_end = current.end_date
            new_end = old_end + timedelta(days=plan.duration_days)

            def mutate(row: SubscriptionTable) -> None:
                row.start_date = old_end
                row.end_date = new_end
                row.next_billing_date = new_end
                row.amount_paid = (row.amount_paid or Decimal("0")) + payment.amount
                row.renewal_failed_at = None

            snapshot, _ = await self._apply(
                subscription_id,
                Status.ACTIVE,
                HistoryEventType.RENEWED,
                mutate=mutate,
                metadata={
                    "payment_id": payment.payment_id,
                    "amount": str(payment.amount),
                    "previous_end_date": old_end.isoformat(),
                    "new_end_date": new_end.isoformat(),
                },
                expected_version=current.version,
            )

        self.metrics.record_renewal("succeeded")
        await emit_subscription_renewed(
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            payment_id=payment.payment_id,
            amount=payment.amount,
            new_end_date=new_end.isoformat(),
            event_bus=self.event_bus,
        )
        return snapshot

    async def _record_renewal_failure(
        self,
        subscription_id: str,
        payment_id: str | None,
        reason: str | None,
        expected_version: int,
    ) -> None:
        today = self.clock.today()

        def mutate(row: SubscriptionTable) -> None:
            if row.renewal_failed_at is None:
                row.renewal_failed_at = today

        snapshot, _ = await self._apply(
            subscription_id,
            Status.ACTIVE,
            HistoryEventType.RENEWAL_FAILED,
            mutate=mutate,
            metadata={"payment_id": payment_id, "failure_reason": reason},
            expected_version=expected_version,
        )
        self.metrics.record_renewal("failed")
        logger.warning(
            "subscription.renewal_declined",
            subscription_id=subscription_id,
            reason=reason,
            renewal_failed_at=snapshot.renewal_failed_at.isoformat()
            if snapshot.renewal_failed_at
            else None,
        )

    # ==================== Pause / Resume ====================

    async def pause(self, subscription_id: str) -> SubscriptionSnapshot:
        """ACTIVE -> PAUSED; billing dates are left alone."""
        async with self._locks.hold(subscription_id):
            snapshot, old_status = await self._apply(
                subscription_id,
                Status.PAUSED,
                HistoryEventType.PAUSED,
                allowed_from=frozenset({Status.ACTIVE}),
            )
        await emit_status_changed(
            SubscriptionEvents.SUBSCRIPTION_PAUSED,
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            old_status=old_status.value,
            new_status=snapshot.status.value,
            event_bus=self.event_bus,
        )
        return snapshot

    async def resume(self, subscription_id: str) -> SubscriptionSnapshot:
        """
        PAUSED -> ACTIVE.

        A paused subscription whose period already ended is expired instead
        and ``IllegalStateTransitionError`` is raised.
        """
        async with self._locks.hold(subscription_id):
            current = await self._load(subscription_id)
            if current.status != Status.PAUSED:
                raise IllegalStateTransitionError(
                    "Only paused subscriptions can be resumed",
                    current_state=current.status.value,
                    requested_state=Status.ACTIVE.value,
                    subscription_id=subscription_id,
                )

            if current.end_date < self.clock.today():
                await self._expire_locked(subscription_id, "End date passed")
                raise IllegalStateTransitionError(
                    "Cannot resume a subscription whose period has ended",
                    current_state=Status.EXPIRED.value,
                    requested_state=Status.ACTIVE.value,
                    subscription_id=subscription_id,
                )

            snapshot, old_status = await self._apply(
                subscription_id,
                Status.ACTIVE,
                HistoryEventType.RESUMED,
                allowed_from=frozenset({Status.PAUSED}),
                expected_version=current.version,
            )

        await emit_status_changed(
            SubscriptionEvents.SUBSCRIPTION_RESUMED,
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            old_status=old_status.value,
            new_status=snapshot.status.value,
            event_bus=self.event_bus,
        )
        return snapshot

    # ==================== Expire / cleanup ====================

    async def expire(self, subscription_id: str, reason: str = "Grace period elapsed") -> SubscriptionSnapshot:
        """Force EXPIRED (used by the billing sweep)."""
        async with self._locks.hold(subscription_id):
            return await self._expire_locked(subscription_id, reason)

    async def _expire_locked(self, subscription_id: str, reason: str) -> SubscriptionSnapshot:
        def mutate(row: SubscriptionTable) -> None:
            row.auto_renew = False
            row.deleted_at = self.clock.now()

        snapshot, old_status = await self._apply(
            subscription_id,
            Status.EXPIRED,
            HistoryEventType.EXPIRED,
            mutate=mutate,
            metadata={"reason": reason},
            allowed_from=frozenset({Status.ACTIVE, Status.PAUSED}),
        )
        self.metrics.record_expiration(reason)
        await emit_status_changed(
            SubscriptionEvents.SUBSCRIPTION_EXPIRED,
            subscription_id=subscription_id,
            user_id=snapshot.user_id,
            old_status=old_status.value,
            new_status=snapshot.status.value,
            event_bus=self.event_bus,
            reason=reason,
        )
        return snapshot

    async def auto_cancel_abandoned(
        self, subscription_id: str, reason: str = "Payment never completed"
    ) -> SubscriptionSnapshot:
        """Cancel a PENDING_PAYMENT row that was never completed."""

        def mutate(row: SubscriptionTable) -> None:
            row.auto_renew = False
            row.deleted_at = self.clock.now()

        async with self._locks.hold(subscription_id):
            snapshot, _ = await self._apply(
                subscription_id,
                Status.CANCELLED,
                HistoryEventType.AUTO_CANCELLED,
                mutate=mutate,
                metadata={"reason": reason},
                allowed_from=frozenset({Status.PENDING_PAYMENT}),
            )
        return snapshot

    # ==================== Payment method ====================

    async def update_payment_method(
        self, subscription_id: str, request: UpdatePaymentMethodRequest
    ) -> SubscriptionSnapshot:
        """Replace the stored card; status is unchanged."""
        ensure_valid(
            validate_card(
                request.card_token,
                request.card_exp_month,
                request.card_exp_year,
                self.clock.today(),
            ),
            "Invalid payment details",
        )

        def mutate(row: SubscriptionTable) -> None:
            row.card_token = request.card_token
            row.card_exp_month = request.card_exp_month
            row.card_exp_year = request.card_exp_year
            row.payment_method = request.payment_method

        async with self._locks.hold(subscription_id):
            current = await self._load(subscription_id)
            if current.status not in (Status.ACTIVE, Status.PAUSED) or current.deleted_at:
                raise IllegalStateTransitionError(
                    "Payment method can only be updated on ACTIVE or PAUSED subscriptions",
                    current_state=current.status.value,
                    requested_state=current.status.value,
                    subscription_id=subscription_id,
                )
            snapshot, _ = await self._apply(
                subscription_id,
                current.status,
                HistoryEventType.PAYMENT_METHOD_UPDATED,
                mutate=mutate,
                metadata={
                    "payment_method": request.payment_method.value,
                    "card_last4": mask_card_token(request.card_token),
                },
                expected_version=current.version,
            )
        return snapshot

    async def attach_qr_code(self, subscription_id: str) -> SubscriptionSnapshot:
        """Return the subscription with a QR token, issuing one if it has none."""
        async with self._locks.hold(subscription_id):
            async with self.session_factory() as session:
                row = await repository.get_subscription_row(session, subscription_id)
                if row is None:
                    raise SubscriptionNotFoundError(
                        f"Subscription {subscription_id} not found",
                        subscription_id=subscription_id,
                    )
                if row.status != Status.ACTIVE or row.deleted_at is not None:
                    raise IllegalStateTransitionError(
                        "QR codes are only issued for ACTIVE subscriptions",
                        current_state=row.status.value,
                        requested_state=Status.ACTIVE.value,
                        subscription_id=subscription_id,
                    )
                if not row.qr_code_data:
                    row.qr_code_data = self.qr_issuer.issue(subscription_id)
                    row.updated_at = self.clock.now()
                    try:
                        await session.commit()
                    except StaleDataError as exc:
                        await session.rollback()
                        raise ConcurrentModificationError(
                            f"Subscription {subscription_id} changed concurrently",
                            subscription_id=subscription_id,
                            expected_version=row.version,
                        ) from exc
                return subscription_from_row(row)

    # ==================== Recovery ====================

    async def reconcile(self) -> dict[str, int]:
        """
        Settle PENDING_PAYMENT subscriptions after a restart.

        Run after ``PaymentProcessor.reconcile_pending``: a subscription whose
        initial charge succeeded is activated; one whose charges all failed is
        closed out; one with no charge yet is left to the abandoned cleanup.
        """
        async with self.session_factory() as session:
            pending_ids = await repository.select_pending_subscription_ids(session)

        summary = {"activated": 0, "failed": 0, "untouched": 0}
        for subscription_id in pending_ids:
            initial = [
                p
                for p in await self.payments.list_payments(subscription_id)
                if p.purpose == PaymentPurpose.INITIAL
            ]
            succeeded = next((p for p in initial if p.succeeded), None)
            async with self._locks.hold(subscription_id):
                current = await self._load(subscription_id)
                if current.status != Status.PENDING_PAYMENT or current.deleted_at:
                    continue
                if succeeded is not None:
                    plan = await self.catalog.get_plan(current.plan_id)
                    await self._activate(subscription_id, plan, succeeded)
                    summary["activated"] += 1
                elif initial and all(p.status == PaymentStatus.FAILED for p in initial):
                    last = initial[-1]
                    await self._fail_creation(subscription_id, last.payment_id, last.failure_reason)
                    summary["failed"] += 1
                else:
                    summary["untouched"] += 1

        if pending_ids:
            logger.info("subscription.reconciled", **summary)
        return summary


__all__ = ["ALLOWED_TRANSITIONS", "SubscriptionLifecycle", "ensure_transition"]
