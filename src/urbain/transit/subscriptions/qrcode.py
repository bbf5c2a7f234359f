"""
Proof-of-subscription tokens.

A token is an HS256 JWT naming the subscription. A valid signature is not
enough: ``validate`` re-reads the subscription so cancelling it revokes every
token issued before.
"""

from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

import jwt
import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from urbain.transit.settings import QRSettings, settings
from urbain.transit.subscriptions import repository
from urbain.transit.subscriptions.clock import Clock, SystemClock
from urbain.transit.subscriptions.exceptions import InvalidQRCodeError
from urbain.transit.subscriptions.models import SubscriptionStatus
from urbain.transit.subscriptions.schemas import QRValidationResult

logger = structlog.get_logger(__name__)

TOKEN_TYPE = "transit-qr"


class QRCodeIssuer:
    """Issue and check QR proof tokens."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        config: QRSettings | None = None,
        clock: Clock | None = None,
        grace_period_days: int | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.config = config or settings.qr
        self.clock = clock or SystemClock()
        if grace_period_days is None:
            grace_period_days = settings.subscriptions.grace_period_days
        self.grace_period_days = grace_period_days

    def issue(self, subscription_id: str) -> str:
        """Sign a token for a subscription (callers check it is ACTIVE)."""
        now = self.clock.now()
        claims: dict[str, Any] = {
            "sub": subscription_id,
            "typ": TOKEN_TYPE,
            "iss": self.config.issuer,
            "iat": int(now.timestamp()),
            "jti": str(uuid4()),
        }
        if self.config.token_ttl_days:
            claims["exp"] = int((now + timedelta(days=self.config.token_ttl_days)).timestamp())

        return jwt.encode(claims, self.config.secret_key, algorithm=self.config.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        """
        Verify signature and structure.

        Raises:
            InvalidQRCodeError: Malformed, forged, foreign or expired token
        """
        if not token or not isinstance(token, str):
            raise InvalidQRCodeError("QR code is empty")

        try:
            claims = jwt.decode(
                token,
                self.config.secret_key,
                algorithms=[self.config.algorithm],
                issuer=self.config.issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "require": ["sub", "iat", "jti"],
                },
            )
        except jwt.InvalidSignatureError as e:
            raise InvalidQRCodeError("Signature verification failed") from e
        except jwt.InvalidIssuerError as e:
            raise InvalidQRCodeError("Issuer validation failed") from e
        except jwt.InvalidTokenError as e:
            raise InvalidQRCodeError(f"Token validation failed: {e!s}") from e

        if claims.get("typ") != TOKEN_TYPE:
            raise InvalidQRCodeError(f"Expected token type '{TOKEN_TYPE}'")

        exp = claims.get("exp")
        if exp is not None and datetime.fromtimestamp(exp, UTC) <= self.clock.now():
            raise InvalidQRCodeError("QR code has expired")

        return claims

    async def validate(self, token: str) -> QRValidationResult:
        """Check the token and the current state of its subscription."""
        try:
            claims = self.decode(token)
        except InvalidQRCodeError as exc:
            logger.info("qr.rejected", reason=exc.message)
            return QRValidationResult(valid=False, reason=exc.message)

        subscription_id = str(claims["sub"])
        async with self.session_factory() as session:
            row = await repository.get_subscription_row(session, subscription_id)

        if row is None:
            return QRValidationResult(
                valid=False, subscription_id=subscription_id, reason="Subscription not found"
            )

        result = QRValidationResult(
            valid=False,
            subscription_id=subscription_id,
            status=row.status,
            end_date=row.end_date,
        )
        if row.status != SubscriptionStatus.ACTIVE or row.deleted_at is not None:
            reason = f"Subscription is {row.status.value}"
        elif row.end_date + timedelta(days=self.grace_period_days) < self.clock.today():
            # ACTIVE past end_date means a renewal is pending; usable through grace
            reason = "Subscription period has ended"
        else:
            return result.model_copy(update={"valid": True})

        logger.info("qr.rejected", subscription_id=subscription_id, reason=reason)
        return result.model_copy(update={"reason": reason})


__all__ = ["QRCodeIssuer", "TOKEN_TYPE"]
