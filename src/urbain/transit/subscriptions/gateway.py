"""
Payment gateway collaborators.

The core only depends on ``PaymentGateway``. A declined charge is a normal
``GatewayResult`` with ``success=False``; transport problems (timeouts,
connection errors, 5xx) raise ``GatewayUnavailableError`` so the caller can
record them as transient failures.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from urbain.transit.settings import GatewaySettings, Settings

logger = structlog.get_logger(__name__)

# Development-only webhook secret used by MockPaymentGateway
MOCK_WEBHOOK_SECRET = "mock-webhook-secret"


class GatewayResult(BaseModel):
    """Outcome reported by the gateway for a charge or refund."""

    model_config = ConfigDict(frozen=True)

    success: bool
    external_txn_id: str | None = None
    failure_reason: str | None = None


class GatewayUnavailableError(Exception):
    """Gateway could not be reached or answered with a server error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


def mask_card_token(card_token: str | None) -> str:
    """Mask a card token for logs, keeping the last four characters."""
    if not card_token or len(card_token) <= 4:
        return "****"
    return "****" + card_token[-4:]


class PaymentGateway(ABC):
    """External payment provider."""

    @abstractmethod
    async def charge(
        self, card_token: str, amount: Decimal, currency: str, idempotency_key: str
    ) -> GatewayResult:
        """Capture ``amount``; the provider must dedupe on ``idempotency_key``."""

    @abstractmethod
    async def refund(self, external_txn_id: str, amount: Decimal) -> GatewayResult:
        """Refund a previously captured transaction."""

    @abstractmethod
    def verify_webhook_signature(self, payload: str | bytes, signature: str | None) -> bool:
        """Check a provider webhook signature."""

    async def close(self) -> None:
        return None


def sign_webhook_payload(secret: str, payload: str | bytes) -> str:
    """Hex HMAC-SHA256 of a webhook payload."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify_webhook_hmac(secret: str, payload: str | bytes, signature: str | None) -> bool:
    """Compare a hex HMAC-SHA256 signature, optionally prefixed ``sha256=``."""
    if not secret:
        logger.warning("gateway.webhook.secret_missing")
        return False
    if not signature:
        logger.error("gateway.webhook.signature_missing")
        return False

    provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
    expected = sign_webhook_payload(secret, payload).encode("ascii")
    valid = hmac.compare_digest(expected, provided.strip().lower().encode("utf-8"))
    if not valid:
        logger.warning("gateway.webhook.signature_invalid")
    return valid


class MockPaymentGateway(PaymentGateway):
    """
    In-process gateway for development.

    Charges succeed unless the card token is listed in ``decline_tokens``.
    Results are remembered per idempotency key, like a real provider. Webhooks
    are signed with ``webhook_secret`` exactly as the HTTP provider signs them.
    """

    def __init__(
        self,
        decline_tokens: set[str] | None = None,
        webhook_secret: str = MOCK_WEBHOOK_SECRET,
    ) -> None:
        self.decline_tokens = set(decline_tokens or ())
        self.webhook_secret = webhook_secret
        self.charges: dict[str, GatewayResult] = {}
        self.refunds: list[tuple[str, Decimal]] = []
        self.charge_calls = 0

    async def charge(
        self, card_token: str, amount: Decimal, currency: str, idempotency_key: str
    ) -> GatewayResult:
        self.charge_calls += 1
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]

        if card_token in self.decline_tokens:
            result = GatewayResult(success=False, failure_reason="card_declined")
        else:
            result = GatewayResult(success=True, external_txn_id=f"mock_txn_{uuid4().hex[:8]}")

        self.charges[idempotency_key] = result
        logger.info(
            "gateway.mock.charge",
            amount=str(amount),
            currency=currency,
            card=mask_card_token(card_token),
            idempotency_key=idempotency_key,
            success=result.success,
        )
        return result

    async def refund(self, external_txn_id: str, amount: Decimal) -> GatewayResult:
        self.refunds.append((external_txn_id, amount))
        logger.info("gateway.mock.refund", amount=str(amount), external_txn_id=external_txn_id)
        return GatewayResult(success=True, external_txn_id=f"mock_refund_{uuid4().hex[:8]}")

    def verify_webhook_signature(self, payload: str | bytes, signature: str | None) -> bool:
        return verify_webhook_hmac(self.webhook_secret, payload, signature)


class HttpPaymentGateway(PaymentGateway):
    """REST client for an HTTP payment provider."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        webhook_secret: str = "",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the gateway client.

        Args:
            base_url: Provider API base URL
            api_key: Bearer token for the provider API
            webhook_secret: Shared secret for webhook HMAC signatures
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use ``httpx.MockTransport``)
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                    "Accept": "application/json",
                },
                timeout=httpx.Timeout(self.timeout),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(
        self, path: str, data: dict[str, Any], idempotency_key: str | None = None
    ) -> GatewayResult:
        client = await self._get_client()
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else None

        try:
            response = await client.post(path, json=data, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning("gateway.http.timeout", path=path, error=str(e))
            raise GatewayUnavailableError(f"Request timeout: {path}") from e
        except httpx.RequestError as e:
            logger.warning("gateway.http.request_error", path=path, error=str(e))
            raise GatewayUnavailableError(f"Request failed: {e}") from e

        if response.status_code >= 500 or response.status_code == 429:
            raise GatewayUnavailableError(
                f"Gateway error {response.status_code}", status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            reason = body.get("failure_reason") or body.get("error") or response.text
            return GatewayResult(success=False, failure_reason=str(reason or "declined"))

        return GatewayResult(
            success=bool(body.get("success", True)),
            external_txn_id=body.get("transaction_id"),
            failure_reason=body.get("failure_reason"),
        )

    async def charge(
        self, card_token: str, amount: Decimal, currency: str, idempotency_key: str
    ) -> GatewayResult:
        logger.debug(
            "gateway.http.charge",
            amount=str(amount),
            currency=currency,
            card=mask_card_token(card_token),
            idempotency_key=idempotency_key,
        )
        return await self._post(
            "/v1/charges",
            {"card_token": card_token, "amount": str(amount), "currency": currency},
            idempotency_key=idempotency_key,
        )

    async def refund(self, external_txn_id: str, amount: Decimal) -> GatewayResult:
        return await self._post(
            "/v1/refunds",
            {"transaction_id": external_txn_id, "amount": str(amount)},
            idempotency_key=f"refund:{external_txn_id}",
        )

    def verify_webhook_signature(self, payload: str | bytes, signature: str | None) -> bool:
        return verify_webhook_hmac(self.webhook_secret, payload, signature)


def build_gateway(
    settings: Settings | GatewaySettings, timeout: float | None = None
) -> PaymentGateway:
    """Create the gateway configured in settings."""
    if isinstance(settings, Settings):
        timeout = timeout or settings.subscriptions.gateway_timeout_seconds
        settings = settings.gateway

    if settings.provider == "mock":
        return MockPaymentGateway(webhook_secret=settings.webhook_secret or MOCK_WEBHOOK_SECRET)
    if settings.provider == "http":
        return HttpPaymentGateway(
            base_url=settings.base_url,
            api_key=settings.api_key,
            webhook_secret=settings.webhook_secret,
            timeout=timeout or 10.0,
        )
    raise ValueError(f"Unknown payment gateway provider: {settings.provider}")


__all__ = [
    "MOCK_WEBHOOK_SECRET",
    "GatewayResult",
    "GatewayUnavailableError",
    "HttpPaymentGateway",
    "MockPaymentGateway",
    "PaymentGateway",
    "build_gateway",
    "mask_card_token",
    "sign_webhook_payload",
    "verify_webhook_hmac",
]
