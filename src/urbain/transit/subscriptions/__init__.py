"""
Transit subscription billing.

Public entry point is ``SubscriptionService``; the components it composes are
importable individually for workers and tests.
"""

from urbain.transit.subscriptions.exceptions import (
    AlreadyRefundedError,
    ConcurrentModificationError,
    DuplicatePlanError,
    DuplicateSubscriptionError,
    IllegalStateTransitionError,
    InvalidQRCodeError,
    InvalidRequestError,
    NotFoundError,
    PaymentDeclinedError,
    PaymentNotFoundError,
    PlanNotFoundError,
    RefundNotAllowedError,
    SubscriptionBillingError,
    SubscriptionNotFoundError,
    TransientGatewayError,
)
from urbain.transit.subscriptions.models import (
    HistoryEvent,
    HistoryEventType,
    PaymentKind,
    PaymentMethod,
    PaymentPurpose,
    PaymentRecord,
    PaymentStatus,
    Plan,
    SubscriptionSnapshot,
    SubscriptionStatus,
)
from urbain.transit.subscriptions.service import SubscriptionService

__all__ = [
    "AlreadyRefundedError",
    "ConcurrentModificationError",
    "DuplicatePlanError",
    "DuplicateSubscriptionError",
    "HistoryEvent",
    "HistoryEventType",
    "IllegalStateTransitionError",
    "InvalidQRCodeError",
    "InvalidRequestError",
    "NotFoundError",
    "PaymentDeclinedError",
    "PaymentKind",
    "PaymentMethod",
    "PaymentNotFoundError",
    "PaymentPurpose",
    "PaymentRecord",
    "PaymentStatus",
    "Plan",
    "PlanNotFoundError",
    "RefundNotAllowedError",
    "SubscriptionBillingError",
    "SubscriptionNotFoundError",
    "SubscriptionService",
    "SubscriptionSnapshot",
    "SubscriptionStatus",
    "TransientGatewayError",
]
