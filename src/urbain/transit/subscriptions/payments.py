"""
Idempotent payment capture and refunds.

Every attempt is persisted as a PENDING row, committed before the gateway is
called, and then finalized to SUCCEEDED or FAILED. The unique index on
``idempotency_key`` makes the check-then-insert atomic across processes; a
per-key asyncio lock makes concurrent callers inside one process wait for the
first attempt instead of racing the index. A crash between the gateway call
and finalization leaves a PENDING row that ``reconcile_pending`` re-drives
with the same gateway key once it is older than the gateway timeout plus
``pending_takeover_seconds``. Younger PENDING rows belong to a caller that may
still be waiting on the provider and are reported, never re-sent.
"""

import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.events import EventBus
from urbain.transit.settings import SubscriptionSettings, settings
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.clock import Clock, SystemClock
from urbain.transit.subscriptions.events import emit_payment_processed
from urbain.transit.subscriptions.exceptions import (
    AlreadyRefundedError,
    InvalidRequestError,
    PaymentDeclinedError,
    PaymentNotFoundError,
    RefundNotAllowedError,
    TransientGatewayError,
)
from urbain.transit.subscriptions.gateway import (
    GatewayResult,
    GatewayUnavailableError,
    PaymentGateway,
    mask_card_token,
)
from urbain.transit.subscriptions.locks import KeyedLock
from urbain.transit.subscriptions.mappers import payment_from_row
from urbain.transit.subscriptions.metrics import SubscriptionMetrics, get_subscription_metrics
from urbain.transit.subscriptions.models import (
    PaymentKind,
    PaymentMethod,
    PaymentPurpose,
    PaymentRecord,
    PaymentStatus,
    PaymentTable,
)

logger = structlog.get_logger(__name__)


class PaymentProcessor:
    """
    Charge and refund against a ``PaymentGateway`` with at-most-one capture per key.

    A key that already has a row is answered from that row with no gateway
    call. FAILED rows stay FAILED; retrying a transient failure means a new
    attempt under a new row key (see ``SubscriptionLifecycle``).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateway: PaymentGateway,
        config: SubscriptionSettings | None = None,
        clock: Clock | None = None,
        event_bus: EventBus | None = None,
        metrics: SubscriptionMetrics | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.config = config or settings.subscriptions
        self.clock = clock or SystemClock()
        self.event_bus = event_bus
        self.metrics = metrics or get_subscription_metrics()
        self._key_locks = KeyedLock()

    # ==================== Charges ====================

    async def charge(
        self,
        subscription_id: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str,
        card_token: str | None = None,
        method: PaymentMethod = PaymentMethod.CARD,
        purpose: PaymentPurpose = PaymentPurpose.INITIAL,
        billing_cycle_start: date | None = None,
        gateway_key: str | None = None,
    ) -> PaymentRecord:
        """
        Capture a payment exactly once per ``idempotency_key``.

        Args:
            subscription_id: Subscription being billed
            amount: Amount to capture
            currency: ISO currency code
            idempotency_key: Unique key of this attempt
            card_token: Payment instrument token
            method: Payment method
            purpose: INITIAL or RENEWAL
            billing_cycle_start: Cycle the charge pays for (renewals)
            gateway_key: Key sent to the provider, defaults to ``idempotency_key``

        Returns:
            The stored attempt. A declined or timed-out charge is returned as a
            FAILED record, not raised; see ``charge_or_raise``. A key whose
            attempt is still in flight elsewhere comes back PENDING.
        """
        if not idempotency_key:
            raise InvalidRequestError("Idempotency key is required", {"idempotency_key": "required"})
        if amount <= 0:
            raise InvalidRequestError("Charge amount must be positive", {"amount": str(amount)})

        async with self._key_locks.hold(idempotency_key):
            async with self.session_factory() as session:
                existing = await repository.get_payment_row_by_key(session, idempotency_key)

            if existing is not None:
                self._ensure_same_request(existing, subscription_id, amount)
                if existing.status == PaymentStatus.PENDING:
                    record = payment_from_row(existing)
                    if record.created_at > self.stale_before():
                        # Still inside another caller's gateway window
                        logger.info(
                            "payment.in_flight",
                            payment_id=record.payment_id,
                            idempotency_key=idempotency_key,
                        )
                        return record
                    logger.info(
                        "payment.resuming_pending",
                        payment_id=existing.payment_id,
                        idempotency_key=idempotency_key,
                    )
                    return await self._drive_charge(existing.payment_id)
                self.metrics.record_replay()
                logger.info(
                    "payment.replayed",
                    payment_id=existing.payment_id,
                    idempotency_key=idempotency_key,
                    status=existing.status.value,
                )
                return payment_from_row(existing)

            async with self.session_factory() as session:
                row = PaymentTable(
                    subscription_id=subscription_id,
                    amount=amount,
                    currency=currency.upper(),
                    status=PaymentStatus.PENDING,
                    kind=PaymentKind.CHARGE,
                    purpose=purpose,
                    method=method,
                    idempotency_key=idempotency_key,
                    gateway_key=gateway_key or idempotency_key,
                    billing_cycle_start=billing_cycle_start,
                    card_token=card_token,
                    created_at=self.clock.now(),
                )
                session.add(row)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another process inserted the key first
                    await session.rollback()
                    winner = await repository.get_payment_row_by_key(session, idempotency_key)
                    if winner is None:
                        raise
                    logger.info(
                        "payment.key_race_lost",
                        payment_id=winner.payment_id,
                        idempotency_key=idempotency_key,
                    )
                    return payment_from_row(winner)
                payment_id = row.payment_id

            logger.info(
                "payment.pending",
                payment_id=payment_id,
                subscription_id=subscription_id,
                amount=str(amount),
                currency=currency,
                purpose=purpose.value,
                card=mask_card_token(card_token),
            )
            return await self._drive_charge(payment_id)

    async def charge_or_raise(self, *args, **kwargs) -> PaymentRecord:
        """``charge`` that raises unless the payment SUCCEEDED."""
        record = await self.charge(*args, **kwargs)
        raise_for_payment(record)
        return record

    def _ensure_same_request(
        self, existing: PaymentTable, subscription_id: str, amount: Decimal
    ) -> None:
        if existing.subscription_id != subscription_id or existing.amount != amount:
            raise InvalidRequestError(
                "Idempotency key was already used for a different payment",
                {"idempotency_key": existing.idempotency_key},
            )

    def stale_before(self) -> datetime:
        """PENDING attempts created at or before this instant are abandoned."""
        window = self.config.gateway_timeout_seconds + self.config.pending_takeover_seconds
        return self.clock.now() - timedelta(seconds=window)

    async def _drive_charge(self, payment_id: str) -> PaymentRecord:
        async with self.session_factory() as session:
            row = await repository.get_payment_row(session, payment_id)
        if row is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        if row.status != PaymentStatus.PENDING:
            return payment_from_row(row)

        if not row.card_token:
            return await self._finalize(
                payment_id,
                GatewayResult(success=False, failure_reason="No payment instrument on file"),
                transient=False,
            )

        try:
            result = await asyncio.wait_for(
                self.gateway.charge(row.card_token, row.amount, row.currency, row.gateway_key),
                timeout=self.config.gateway_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "payment.gateway_timeout",
                payment_id=payment_id,
                timeout=self.config.gateway_timeout_seconds,
            )
            result = GatewayResult(
                success=False,
                failure_reason=f"Gateway timeout after {self.config.gateway_timeout_seconds}s",
            )
            return await self._finalize(payment_id, result, transient=True)
        except GatewayUnavailableError as exc:
            logger.warning("payment.gateway_unavailable", payment_id=payment_id, error=str(exc))
            result = GatewayResult(success=False, failure_reason=f"Gateway unavailable: {exc}")
            return await self._finalize(payment_id, result, transient=True)

        return await self._finalize(payment_id, result, transient=False)

    async def _finalize(
        self, payment_id: str, result: GatewayResult, transient: bool
    ) -> PaymentRecord:
        async with self.session_factory() as session:
            row = await repository.get_payment_row(session, payment_id)
            if row is None:
                raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
            if row.status != PaymentStatus.PENDING:
                return payment_from_row(row)

            row.status = PaymentStatus.SUCCEEDED if result.success else PaymentStatus.FAILED
            row.external_txn_id = result.external_txn_id
            row.failure_reason = None if result.success else (result.failure_reason or "declined")
            row.failure_transient = transient and not result.success
            row.completed_at = self.clock.now()
            row.card_token = None
            await session.commit()
            record = payment_from_row(row)

        outcome = "succeeded" if record.succeeded else ("transient" if transient else "declined")
        if record.kind == PaymentKind.REFUND:
            self.metrics.record_refund(outcome)
        else:
            self.metrics.record_charge(outcome, record.purpose, record.currency)

        log = logger.info if record.succeeded else logger.warning
        log(
            f"payment.{record.status.value.lower()}",
            payment_id=record.payment_id,
            subscription_id=record.subscription_id,
            kind=record.kind.value,
            amount=str(record.amount),
            external_txn_id=record.external_txn_id,
            failure_reason=record.failure_reason,
            transient=record.failure_transient,
        )
        await emit_payment_processed(
            subscription_id=record.subscription_id,
            payment_id=record.payment_id,
            status=record.status.value,
            kind=record.kind.value,
            amount=record.amount,
            currency=record.currency,
            failure_reason=record.failure_reason,
            event_bus=self.event_bus,
        )
        return record

    # ==================== Refunds ====================

    async def refund(self, payment_id: str, reason: str | None = None) -> PaymentRecord:
        """
        Refund a SUCCEEDED charge by writing a new REFUND row.

        Raises:
            PaymentNotFoundError: Unknown payment
            RefundNotAllowedError: Target is not a SUCCEEDED charge
            AlreadyRefundedError: A refund already succeeded or is in flight
        """
        async with self._key_locks.hold(f"refund:{payment_id}"):
            async with self.session_factory() as session:
                original = await repository.get_payment_row(session, payment_id)
                if original is None:
                    raise PaymentNotFoundError(
                        f"Payment {payment_id} not found", payment_id=payment_id
                    )
                if original.kind != PaymentKind.CHARGE or original.status != PaymentStatus.SUCCEEDED:
                    raise RefundNotAllowedError(
                        f"Payment {payment_id} cannot be refunded",
                        payment_id=payment_id,
                        status=original.status.value,
                    )

                refunds = await repository.list_refund_rows(session, payment_id)
                for existing in refunds:
                    if existing.status != PaymentStatus.FAILED:
                        raise AlreadyRefundedError(
                            f"Payment {payment_id} was already refunded",
                            payment_id=payment_id,
                            refund_payment_id=existing.payment_id,
                        )

                key = f"refund:{payment_id}"
                if refunds:
                    key = f"{key}:{len(refunds)}"
                row = PaymentTable(
                    subscription_id=original.subscription_id,
                    amount=original.amount,
                    currency=original.currency,
                    status=PaymentStatus.PENDING,
                    kind=PaymentKind.REFUND,
                    purpose=PaymentPurpose.REFUND,
                    method=original.method,
                    idempotency_key=key,
                    gateway_key=key,
                    refunded_payment_id=original.payment_id,
                    refunded_external_txn_id=original.external_txn_id,
                    reason=reason,
                    created_at=self.clock.now(),
                )
                session.add(row)
                await session.commit()
                refund_id = row.payment_id

            logger.info("refund.pending", refund_payment_id=refund_id, payment_id=payment_id)
            return await self._drive_refund(refund_id)

    async def _drive_refund(self, refund_id: str) -> PaymentRecord:
        async with self.session_factory() as session:
            row = await repository.get_payment_row(session, refund_id)
        if row is None:
            raise PaymentNotFoundError(f"Payment {refund_id} not found", payment_id=refund_id)
        if row.status != PaymentStatus.PENDING:
            return payment_from_row(row)

        try:
            result = await asyncio.wait_for(
                self.gateway.refund(row.refunded_external_txn_id or "", row.amount),
                timeout=self.config.gateway_timeout_seconds,
            )
        except TimeoutError:
            result = GatewayResult(success=False, failure_reason="Gateway timeout during refund")
            return await self._finalize(refund_id, result, transient=True)
        except GatewayUnavailableError as exc:
            result = GatewayResult(success=False, failure_reason=f"Gateway unavailable: {exc}")
            return await self._finalize(refund_id, result, transient=True)

        return await self._finalize(refund_id, result, transient=False)

    # ==================== Reconciliation ====================

    async def reconcile_pending(self) -> list[PaymentRecord]:
        """
        Re-drive PENDING attempts left behind by a crash or shutdown.

        Only attempts older than ``stale_before`` are touched; younger ones may
        still be awaiting the gateway in another process.
        """
        cutoff = self.stale_before()
        async with self.session_factory() as session:
            pending = [
                (row.payment_id, row.kind, row.idempotency_key)
                for row in await repository.list_pending_payment_rows(
                    session, created_before=cutoff
                )
            ]

        resolved: list[PaymentRecord] = []
        for payment_id, kind, key in pending:
            async with self._key_locks.hold(key):
                if kind == PaymentKind.REFUND:
                    record = await self._drive_refund(payment_id)
                else:
                    record = await self._drive_charge(payment_id)
            resolved.append(record)

        if resolved:
            logger.info(
                "payment.reconciled",
                count=len(resolved),
                succeeded=sum(1 for r in resolved if r.succeeded),
            )
        return resolved

    def verify_webhook(self, payload: str | bytes, signature: str | None) -> bool:
        return self.gateway.verify_webhook_signature(payload, signature)

    # ==================== Queries ====================

    async def get_payment(self, payment_id: str) -> PaymentRecord:
        async with self.session_factory() as session:
            row = await repository.get_payment_row(session, payment_id)
        if row is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found", payment_id=payment_id)
        return payment_from_row(row)

    async def find_by_key(self, idempotency_key: str) -> PaymentRecord | None:
        async with self.session_factory() as session:
            row = await repository.get_payment_row_by_key(session, idempotency_key)
        return payment_from_row(row) if row else None

    async def list_payments(self, subscription_id: str) -> list[PaymentRecord]:
        async with self.session_factory() as session:
            rows = await repository.list_payment_rows(session, subscription_id)
        return [payment_from_row(row) for row in rows]

    async def last_successful_charge(self, subscription_id: str) -> PaymentRecord | None:
        async with self.session_factory() as session:
            row = await repository.last_successful_charge_row(session, subscription_id)
        return payment_from_row(row) if row else None

    async def count_failed_renewals(self, subscription_id: str, cycle_start: date) -> int:
        async with self.session_factory() as session:
            return await repository.count_failed_renewals(session, subscription_id, cycle_start)


def raise_for_payment(record: PaymentRecord, subscription_id: str | None = None) -> None:
    """Raise the typed error matching a non-successful attempt."""
    if record.status == PaymentStatus.SUCCEEDED:
        return
    if record.status == PaymentStatus.PENDING or record.failure_transient:
        raise TransientGatewayError(
            record.failure_reason or "Payment outcome not yet known",
            payment_id=record.payment_id,
            idempotency_key=record.idempotency_key,
        )
    raise PaymentDeclinedError(
        f"Payment declined: {record.failure_reason}",
        payment_id=record.payment_id,
        failure_reason=record.failure_reason,
        subscription_id=subscription_id or record.subscription_id,
    )


__all__ = ["PaymentProcessor", "raise_for_payment"]
