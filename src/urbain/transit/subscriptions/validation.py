"""
Explicit boundary validation.

Each check returns a ``ValidationResult`` instead of raising, so callers can
collect every problem before deciding how to fail. ``ensure_valid`` turns a
failed result into ``InvalidRequestError``.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from urbain.transit.subscriptions.exceptions import InvalidRequestError

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_REASON_LENGTH = 500


@dataclass
class ValidationResult:
    """Either ok, or a mapping of field name to error message."""

    errors: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors

    def add(self, field_name: str, message: str) -> "ValidationResult":
        self.errors.setdefault(field_name, message)
        return self

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        for name, message in other.errors.items():
            self.add(name, message)
        return self


def is_card_expired(exp_month: int | None, exp_year: int | None, today: date) -> bool:
    """A card is usable through the last day of its expiry month."""
    if exp_month is None or exp_year is None:
        return True
    return (exp_year, exp_month) < (today.year, today.month)


def is_card_expiring_soon(
    exp_month: int | None, exp_year: int | None, today: date, months_ahead: int = 3
) -> bool:
    if exp_month is None or exp_year is None:
        return False
    if is_card_expired(exp_month, exp_year, today):
        return False
    horizon = today.year * 12 + (today.month - 1) + months_ahead
    return exp_year * 12 + (exp_month - 1) <= horizon


def validate_card(
    card_token: str | None, exp_month: int | None, exp_year: int | None, today: date
) -> ValidationResult:
    result = ValidationResult()
    if not card_token or not card_token.strip():
        result.add("card_token", "Card token is required")
    if exp_month is None or not 1 <= exp_month <= 12:
        result.add("card_exp_month", "Card expiration month must be between 1 and 12")
    if exp_year is None:
        result.add("card_exp_year", "Card expiration year is required")
    if result.ok and is_card_expired(exp_month, exp_year, today):
        result.add("card_exp_year", "Card is expired")
    return result


def validate_currency(currency: str | None, expected: str | None = None) -> ValidationResult:
    result = ValidationResult()
    if not currency or len(currency) != 3 or not currency.isalpha():
        return result.add("currency", "Currency must be a 3-letter ISO code")
    if expected is not None and currency.upper() != expected.upper():
        result.add("currency", f"Currency {currency.upper()} does not match plan currency {expected}")
    return result


def validate_reason(reason: str | None) -> ValidationResult:
    result = ValidationResult()
    if reason is not None and len(reason) > MAX_REASON_LENGTH:
        result.add("reason", f"Reason must not exceed {MAX_REASON_LENGTH} characters")
    return result


def validate_identifier(value: str | None, field_name: str) -> ValidationResult:
    result = ValidationResult()
    if not value or not value.strip():
        result.add(field_name, f"{field_name} is required")
    return result


def parse_model(model_cls: type[ModelT], data: ModelT | dict[str, Any]) -> ModelT:
    """Validate a request payload, translating pydantic errors to InvalidRequestError."""
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except ValidationError as exc:
        errors = {
            ".".join(str(part) for part in err["loc"]) or "__root__": err["msg"]
            for err in exc.errors()
        }
        raise InvalidRequestError(f"Invalid {model_cls.__name__}", errors=errors) from exc


def ensure_valid(result: ValidationResult, message: str = "Invalid request") -> None:
    if not result.ok:
        raise InvalidRequestError(message, errors=result.errors)


__all__ = [
    "MAX_REASON_LENGTH",
    "ValidationResult",
    "ensure_valid",
    "is_card_expired",
    "is_card_expiring_soon",
    "parse_model",
    "validate_card",
    "validate_currency",
    "validate_identifier",
    "validate_reason",
]
