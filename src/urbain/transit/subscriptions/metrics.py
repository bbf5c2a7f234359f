"""
Subscription billing metrics.

Instruments come from the OpenTelemetry API; without a configured SDK the
global meter provider is a no-op, so recording is always safe.
"""

from opentelemetry import metrics

from urbain.transit.subscriptions.models import PaymentPurpose


class SubscriptionMetrics:
    """Billing metrics collector."""

    def __init__(self, meter: metrics.Meter | None = None) -> None:
        self.meter = meter or metrics.get_meter("urbain.transit.subscriptions")

        self.charge_counter = self.meter.create_counter(
            name="subscriptions.payment.charges",
            description="Charge attempts by outcome",
        )
        self.charge_replay_counter = self.meter.create_counter(
            name="subscriptions.payment.replays",
            description="Charges answered from an existing idempotency key",
        )
        self.refund_counter = self.meter.create_counter(
            name="subscriptions.payment.refunds",
            description="Refunds by outcome",
        )
        self.renewal_counter = self.meter.create_counter(
            name="subscriptions.renewals",
            description="Renewals by outcome",
        )
        self.expiration_counter = self.meter.create_counter(
            name="subscriptions.expirations",
            description="Subscriptions moved to EXPIRED",
        )
        self.transition_counter = self.meter.create_counter(
            name="subscriptions.transitions",
            description="Lifecycle transitions by event type",
        )
        self.sweep_duration = self.meter.create_histogram(
            name="subscriptions.sweep.duration",
            unit="s",
            description="Billing sweep duration",
        )

    def record_charge(self, outcome: str, purpose: PaymentPurpose, currency: str) -> None:
        self.charge_counter.add(
            1, {"outcome": outcome, "purpose": purpose.value, "currency": currency}
        )

    def record_replay(self) -> None:
        self.charge_replay_counter.add(1)

    def record_refund(self, outcome: str) -> None:
        self.refund_counter.add(1, {"outcome": outcome})

    def record_renewal(self, outcome: str) -> None:
        self.renewal_counter.add(1, {"outcome": outcome})

    def record_expiration(self, reason: str) -> None:
        self.expiration_counter.add(1, {"reason": reason})

    def record_transition(self, event_type: str) -> None:
        self.transition_counter.add(1, {"event_type": event_type})

    def record_sweep(self, duration_seconds: float) -> None:
        self.sweep_duration.record(duration_seconds)


_metrics: SubscriptionMetrics | None = None


def get_subscription_metrics() -> SubscriptionMetrics:
    global _metrics
    if _metrics is None:
        _metrics = SubscriptionMetrics()
    return _metrics


__all__ = ["SubscriptionMetrics", "get_subscription_metrics"]
