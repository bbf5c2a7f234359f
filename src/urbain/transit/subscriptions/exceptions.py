"""
Subscription billing exceptions.

Custom exceptions for subscription and payment operations with clear error
messages, status codes, context and recovery hints.
"""

from typing import Any


class SubscriptionBillingError(Exception):
    """
    Base subscription billing error with enhanced context.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Additional context data about the error
        recovery_hint: Suggested action to resolve the error
        retryable: Whether the caller may retry under the same idempotency scope
    """

    retryable = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int = 400,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        self.message = message
        self.error_code = error_code or "SUBSCRIPTION_BILLING_ERROR"
        self.status_code = status_code
        self.context = context or {}
        self.recovery_hint = recovery_hint
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for API responses."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
        }


class NotFoundError(SubscriptionBillingError):
    """A plan, subscription or payment does not exist."""

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(
            message,
            "NOT_FOUND",
            status_code=404,
            context=context,
            recovery_hint=recovery_hint,
        )


class PlanNotFoundError(NotFoundError):
    """Plan not found (or not purchasable) error."""

    def __init__(self, message: str, plan_id: str | None = None, code: str | None = None) -> None:
        context = {}
        if plan_id:
            context["plan_id"] = plan_id
        if code:
            context["code"] = code

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the plan ID or code and ensure the plan is active",
        )
        self.error_code = "PLAN_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    """Subscription not found error."""

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        context = {}
        if subscription_id:
            context["subscription_id"] = subscription_id

        super().__init__(
            message,
            context=context,
            recovery_hint="Verify the subscription ID and ensure it exists",
        )
        self.error_code = "SUBSCRIPTION_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    """Payment not found error."""

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        context = {}
        if payment_id:
            context["payment_id"] = payment_id

        super().__init__(message, context=context, recovery_hint="Verify the payment ID")
        self.error_code = "PAYMENT_NOT_FOUND"


class DuplicateSubscriptionError(SubscriptionBillingError):
    """User already holds a live subscription to the plan."""

    def __init__(self, message: str, user_id: str, plan_id: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_SUBSCRIPTION",
            status_code=409,
            context={"user_id": user_id, "plan_id": plan_id},
            recovery_hint="Renew or resume the existing subscription instead",
        )


class DuplicatePlanError(SubscriptionBillingError):
    """Plan code already exists."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(
            message,
            "DUPLICATE_PLAN",
            status_code=409,
            context={"code": code},
            recovery_hint="Use a unique plan code",
        )


class IllegalStateTransitionError(SubscriptionBillingError):
    """Requested lifecycle transition is not allowed from the current state."""

    def __init__(
        self,
        message: str,
        current_state: str | None,
        requested_state: str,
        subscription_id: str | None = None,
    ) -> None:
        context: dict[str, Any] = {
            "current_state": current_state,
            "requested_state": requested_state,
        }
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            "ILLEGAL_STATE_TRANSITION",
            status_code=409,
            context=context,
            recovery_hint=(
                f"Cannot transition from {current_state} to {requested_state}. "
                "Check subscription status first."
            ),
        )


class ConcurrentModificationError(SubscriptionBillingError):
    """Another writer changed the subscription between read and write."""

    def __init__(self, message: str, subscription_id: str, expected_version: int) -> None:
        super().__init__(
            message,
            "CONCURRENT_MODIFICATION",
            status_code=409,
            context={"subscription_id": subscription_id, "expected_version": expected_version},
            recovery_hint="Reload the subscription and retry the operation",
        )


class PaymentDeclinedError(SubscriptionBillingError):
    """The gateway rejected the charge, or transient retries were exhausted."""

    def __init__(
        self,
        message: str,
        payment_id: str | None = None,
        failure_reason: str | None = None,
        subscription_id: str | None = None,
    ) -> None:
        context: dict[str, Any] = {}
        if payment_id:
            context["payment_id"] = payment_id
        if failure_reason:
            context["failure_reason"] = failure_reason
        if subscription_id:
            context["subscription_id"] = subscription_id
        super().__init__(
            message,
            "PAYMENT_DECLINED",
            status_code=402,
            context=context,
            recovery_hint="Update the payment method and try again",
        )
        self.payment_id = payment_id
        self.failure_reason = failure_reason


class TransientGatewayError(SubscriptionBillingError):
    """Gateway timeout or network failure; safe to retry under the same key scope."""

    retryable = True

    def __init__(
        self, message: str, payment_id: str | None = None, idempotency_key: str | None = None
    ) -> None:
        context: dict[str, Any] = {}
        if payment_id:
            context["payment_id"] = payment_id
        if idempotency_key:
            context["idempotency_key"] = idempotency_key
        super().__init__(
            message,
            "TRANSIENT_GATEWAY_ERROR",
            status_code=503,
            context=context,
            recovery_hint="Retry later; the attempt was recorded and will not double charge",
        )
        self.payment_id = payment_id


class AlreadyRefundedError(SubscriptionBillingError):
    """Payment already has a refund."""

    def __init__(self, message: str, payment_id: str, refund_payment_id: str) -> None:
        super().__init__(
            message,
            "ALREADY_REFUNDED",
            status_code=409,
            context={"payment_id": payment_id, "refund_payment_id": refund_payment_id},
            recovery_hint="A payment can be refunded only once",
        )


class RefundNotAllowedError(SubscriptionBillingError):
    """Payment is not a succeeded charge and cannot be refunded."""

    def __init__(self, message: str, payment_id: str, status: str) -> None:
        super().__init__(
            message,
            "REFUND_NOT_ALLOWED",
            status_code=409,
            context={"payment_id": payment_id, "status": status},
            recovery_hint="Only SUCCEEDED charges can be refunded",
        )


class InvalidRequestError(SubscriptionBillingError):
    """Input rejected at the operation boundary."""

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(
            message,
            "INVALID_REQUEST",
            status_code=422,
            context={"errors": errors or {}},
            recovery_hint="Correct the listed fields and resubmit",
        )
        self.errors = errors or {}


class InvalidQRCodeError(SubscriptionBillingError):
    """QR proof token is malformed or carries a bad signature."""

    def __init__(self, message: str) -> None:
        super().__init__(message, "INVALID_QR_CODE", status_code=400)
