"""
Tests for boundary validation helpers.
"""

from datetime import date

import pytest

from urbain.transit.subscriptions.exceptions import InvalidRequestError
from urbain.transit.subscriptions.schemas import PaymentDetails
from urbain.transit.subscriptions.validation import (
    MAX_REASON_LENGTH,
    ValidationResult,
    ensure_valid,
    is_card_expired,
    is_card_expiring_soon,
    parse_model,
    validate_card,
    validate_currency,
    validate_identifier,
    validate_reason,
)

TODAY = date(2024, 6, 15)


@pytest.mark.unit
class TestCardChecks:
    """Test card expiry rules."""

    @pytest.mark.parametrize(
        ("month", "year", "expired"),
        [
            (6, 2024, False),
            (5, 2024, True),
            (12, 2023, True),
            (1, 2025, False),
            (None, 2030, True),
        ],
    )
    def test_is_card_expired(self, month, year, expired):
        assert is_card_expired(month, year, TODAY) is expired

    def test_expiring_soon(self):
        assert is_card_expiring_soon(8, 2024, TODAY) is True
        assert is_card_expiring_soon(10, 2024, TODAY) is False
        assert is_card_expiring_soon(5, 2024, TODAY) is False

    def test_validate_card_collects_all_errors(self):
        result = validate_card("", 0, None, TODAY)

        assert not result.ok
        assert set(result.errors) == {"card_token", "card_exp_month", "card_exp_year"}

    def test_validate_expired_card(self):
        result = validate_card("tok_visa_4242", 1, 2024, TODAY)

        assert result.errors == {"card_exp_year": "Card is expired"}

    def test_validate_good_card(self):
        assert validate_card("tok_visa_4242", 12, 2030, TODAY).ok


@pytest.mark.unit
class TestFieldChecks:
    """Test currency, reason and identifier checks."""

    def test_currency_format(self):
        assert validate_currency("USD").ok
        assert not validate_currency("US").ok
        assert not validate_currency("U5D").ok
        assert not validate_currency(None).ok

    def test_currency_must_match_plan(self):
        result = validate_currency("eur", expected="USD")

        assert "does not match" in result.errors["currency"]
        assert validate_currency("usd", expected="USD").ok

    def test_reason_length(self):
        assert validate_reason(None).ok
        assert validate_reason("x" * MAX_REASON_LENGTH).ok
        assert not validate_reason("x" * (MAX_REASON_LENGTH + 1)).ok

    def test_identifier_required(self):
        assert validate_identifier("abc", "user_id").ok
        assert validate_identifier("   ", "user_id").errors == {"user_id": "user_id is required"}

    def test_merge_keeps_first_message(self):
        result = ValidationResult().add("card_token", "first")
        result.merge(ValidationResult().add("card_token", "second").add("currency", "bad"))

        assert result.errors == {"card_token": "first", "currency": "bad"}

    def test_ensure_valid_raises_with_errors(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            ensure_valid(ValidationResult().add("reason", "too long"), "Bad cancel")

        assert exc_info.value.message == "Bad cancel"
        assert exc_info.value.to_dict()["context"] == {"errors": {"reason": "too long"}}


@pytest.mark.unit
class TestParseModel:
    """Test payload parsing into request schemas."""

    def test_parses_dict(self):
        details = parse_model(
            PaymentDetails, {"card_token": " tok_1 ", "card_exp_month": 4, "card_exp_year": 2031}
        )

        assert details.card_token == "tok_1"
        assert details.auto_renew is True

    def test_passes_model_through(self):
        details = PaymentDetails(card_token="tok_1", card_exp_month=4, card_exp_year=2031)

        assert parse_model(PaymentDetails, details) is details

    def test_errors_keyed_by_field(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_model(PaymentDetails, {"card_exp_month": 4, "card_exp_year": 1999})

        assert set(exc_info.value.errors) == {"card_token", "card_exp_year"}
