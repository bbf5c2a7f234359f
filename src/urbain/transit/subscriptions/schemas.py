"""
Request and result schemas for the subscription operation surface.
"""

from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from urbain.transit.subscriptions.models import PaymentMethod, SubscriptionStatus


class PlanCreateRequest(BaseModel):
    """Schema for creating a plan."""

    model_config = ConfigDict(str_strip_whitespace=True)

    code: str = Field(min_length=1, max_length=64, description="Unique plan code")
    name: str = Field(min_length=1, max_length=255, description="Display name")
    description: str | None = None
    features: list[str] = Field(default_factory=list)
    duration_days: int = Field(ge=1, description="Billing cycle length in days")
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    currency: str = Field(min_length=3, max_length=3)
    is_active: bool = True

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency code."""
        return v.upper()

    @field_validator("code")
    @classmethod
    def validate_code(cls, v: str) -> str:
        return v.upper()


class PaymentDetails(BaseModel):
    """Payment instrument supplied when subscribing."""

    model_config = ConfigDict(str_strip_whitespace=True)

    card_token: str = Field(min_length=1, max_length=128)
    card_exp_month: int = Field(ge=1, le=12)
    card_exp_year: int = Field(ge=2000, le=2100)
    payment_method: PaymentMethod = PaymentMethod.CARD
    auto_renew: bool = True
    idempotency_key: str | None = Field(
        None, max_length=200, description="Caller request key for safe retries"
    )


class CreateSubscriptionRequest(BaseModel):
    """Schema for creating a subscription."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(min_length=1, max_length=64)
    plan_id: str = Field(min_length=1, max_length=36)
    payment: PaymentDetails


class CancelSubscriptionRequest(BaseModel):
    """Schema for cancelling a subscription."""

    model_config = ConfigDict(str_strip_whitespace=True)

    reason: str | None = Field(None, max_length=500)
    refund_requested: bool = False


class UpdatePaymentMethodRequest(BaseModel):
    """Schema for replacing the stored payment instrument."""

    model_config = ConfigDict(str_strip_whitespace=True)

    card_token: str = Field(min_length=1, max_length=128)
    card_exp_month: int = Field(ge=1, le=12)
    card_exp_year: int = Field(ge=2000, le=2100)
    payment_method: PaymentMethod = PaymentMethod.CARD


class QRValidationResult(BaseModel):
    """Outcome of a proof-of-subscription check."""

    model_config = ConfigDict(frozen=True)

    valid: bool
    subscription_id: str | None = None
    status: SubscriptionStatus | None = None
    end_date: date | None = None
    reason: str | None = None


class SweepReport(BaseModel):
    """Counters for one billing sweep."""

    due: int = 0
    renewed: int = 0
    failed: int = 0
    expired: int = 0
    skipped: int = 0
    errors: int = 0
    error_details: dict[str, str] = Field(default_factory=dict)


class SubscriptionStatistics(BaseModel):
    """Aggregate figures for reporting."""

    total_subscriptions: int
    by_status: dict[str, int]
    active_plans: int
    charged_total: Decimal
    refunded_total: Decimal
    net_revenue: Decimal
    history_by_type: dict[str, int] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


__all__ = [
    "CancelSubscriptionRequest",
    "CreateSubscriptionRequest",
    "PaymentDetails",
    "PlanCreateRequest",
    "QRValidationResult",
    "SubscriptionStatistics",
    "SweepReport",
    "UpdatePaymentMethodRequest",
]
