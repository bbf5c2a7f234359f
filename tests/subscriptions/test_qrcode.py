"""
Tests for QR proof-of-subscription tokens.
"""

from datetime import date

import jwt
import pytest

from urbain.transit.settings import QRSettings
from urbain.transit.subscriptions.exceptions import (
    IllegalStateTransitionError,
    InvalidQRCodeError,
)
from urbain.transit.subscriptions.models import SubscriptionStatus
from urbain.transit.subscriptions.qrcode import TOKEN_TYPE, QRCodeIssuer

QR_SECRET = "unit-test-qr-signing-secret-0123456789"


@pytest.mark.integration
class TestQRValidation:
    """Test validation against the live subscription state."""

    @pytest.mark.asyncio
    async def test_issued_token_is_valid(self, service, active_subscription):
        result = await service.validate_qr_code(active_subscription.qr_code_data)

        assert result.valid is True
        assert result.subscription_id == active_subscription.subscription_id
        assert result.status == SubscriptionStatus.ACTIVE
        assert result.end_date == date(2024, 1, 31)
        assert result.reason is None

    @pytest.mark.asyncio
    async def test_cancel_revokes_token(self, service, active_subscription):
        await service.cancel_subscription(active_subscription.subscription_id)

        result = await service.validate_qr_code(active_subscription.qr_code_data)

        assert result.valid is False
        assert result.status == SubscriptionStatus.CANCELLED
        assert result.reason == "Subscription is CANCELLED"

    @pytest.mark.asyncio
    async def test_paused_token_rejected(self, service, active_subscription):
        await service.pause_subscription(active_subscription.subscription_id)

        result = await service.validate_qr_code(active_subscription.qr_code_data)

        assert result.valid is False
        assert result.status == SubscriptionStatus.PAUSED

    @pytest.mark.asyncio
    async def test_valid_during_grace_after_end_date(self, service, clock, active_subscription):
        clock.set(date(2024, 2, 3))
        assert (await service.validate_qr_code(active_subscription.qr_code_data)).valid is True

        clock.set(date(2024, 2, 4))
        result = await service.validate_qr_code(active_subscription.qr_code_data)
        assert result.valid is False
        assert result.reason == "Subscription period has ended"

    @pytest.mark.asyncio
    async def test_forged_token_rejected(self, service, active_subscription, test_settings):
        forged = jwt.encode(
            {
                "sub": active_subscription.subscription_id,
                "typ": TOKEN_TYPE,
                "iss": test_settings.qr.issuer,
                "iat": 1704099600,
                "jti": "forged",
            },
            "forged-signing-secret-abcdefghijklmnop",
            algorithm="HS256",
        )

        result = await service.validate_qr_code(forged)

        assert result.valid is False
        assert result.reason == "Signature verification failed"

    @pytest.mark.asyncio
    async def test_garbage_rejected(self, service):
        result = await service.validate_qr_code("definitely-not-a-token")

        assert result.valid is False
        assert result.subscription_id is None

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, service):
        token = service.qr_issuer.issue("00000000-0000-0000-0000-000000000000")

        result = await service.validate_qr_code(token)

        assert result.valid is False
        assert result.reason == "Subscription not found"


@pytest.mark.integration
class TestQRGeneration:
    """Test issuing tokens through the service."""

    @pytest.mark.asyncio
    async def test_generate_returns_existing_token(self, service, active_subscription):
        snapshot = await service.generate_qr_code(active_subscription.subscription_id)

        assert snapshot.qr_code_data == active_subscription.qr_code_data

    @pytest.mark.asyncio
    async def test_generate_for_cancelled_rejected(self, service, active_subscription):
        await service.cancel_subscription(active_subscription.subscription_id)

        with pytest.raises(IllegalStateTransitionError):
            await service.generate_qr_code(active_subscription.subscription_id)


@pytest.fixture
def make_issuer(clock):
    """Issuer without a database; encoding and decoding never touch it."""

    def factory(**overrides) -> QRCodeIssuer:
        overrides.setdefault("secret_key", QR_SECRET)
        return QRCodeIssuer(None, config=QRSettings(**overrides), clock=clock)

    return factory


@pytest.mark.unit
class TestQRCodeIssuer:
    """Test token encoding rules."""

    def test_token_claims(self, make_issuer):
        issuer = make_issuer(issuer="test-iss")

        claims = issuer.decode(issuer.issue("sub-123"))

        assert claims["sub"] == "sub-123"
        assert claims["typ"] == TOKEN_TYPE
        assert claims["iss"] == "test-iss"
        assert "exp" not in claims

    def test_each_token_unique(self, make_issuer):
        issuer = make_issuer()

        assert issuer.issue("sub-123") != issuer.issue("sub-123")

    def test_ttl_expiry_uses_clock(self, make_issuer, clock):
        issuer = make_issuer(token_ttl_days=1)
        token = issuer.issue("sub-123")
        issuer.decode(token)

        clock.advance(days=2)
        with pytest.raises(InvalidQRCodeError, match="expired"):
            issuer.decode(token)

    def test_foreign_issuer_rejected(self, make_issuer):
        ours = make_issuer()
        theirs = make_issuer(issuer="someone-else")

        with pytest.raises(InvalidQRCodeError, match="Issuer"):
            ours.decode(theirs.issue("sub-123"))

    def test_wrong_token_type_rejected(self, make_issuer):
        issuer = make_issuer()
        token = jwt.encode(
            {"sub": "sub-123", "typ": "access", "iss": "urbain-transit", "iat": 1, "jti": "x"},
            QR_SECRET,
            algorithm="HS256",
        )

        with pytest.raises(InvalidQRCodeError, match="token type"):
            issuer.decode(token)

    def test_empty_token_rejected(self, make_issuer):
        with pytest.raises(InvalidQRCodeError):
            make_issuer().decode("")
