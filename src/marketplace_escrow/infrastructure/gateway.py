"""Payment gateway clients.

Two implementations of the ``PaymentGateway`` protocol:

    - RazorpayGateway: Orders API over httpx with explicit timeouts and
      bounded exponential backoff (tenacity). Order creation is idempotent
      on our side by receipt: the receipt carries the payment's idempotency
      key, and every attempt returns the existing order for it before
      posting a new one. Refunds are looked up by receipt the same way.
    - SimulatedGateway: In-process stand-in for development and tests. Same
      signature scheme, deterministic order ids, injectable failures.

Signatures are HMAC-SHA256 hex digests:
    checkout: hmac(key_secret, "{order_id}|{payment_id}")
    webhook:  hmac(webhook_secret, raw_body)
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import uuid
from typing import TYPE_CHECKING

import httpx
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_escrow.config import get_settings
from marketplace_escrow.domain.exceptions import GatewayError, GatewayTimeoutError
from marketplace_escrow.domain.fees import to_minor_units
from marketplace_escrow.domain.gateway_protocol import GatewayOrder, GatewayRefund
from marketplace_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from decimal import Decimal

    from marketplace_escrow.config import Settings
    from marketplace_escrow.domain.gateway_protocol import PaymentGateway

logger = get_logger(__name__)


def compute_signature(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def _signature_matches(secret: str, message: bytes, signature: str) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(compute_signature(secret, message), signature)


class _RetryableStatusError(Exception):
    """A 429 or 5xx answer; worth another attempt."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"gateway answered {status_code}")
        self.status_code = status_code
        self.body = body


# ---------------------------------------------------------------------------
# Razorpay
# ---------------------------------------------------------------------------
class RazorpayGateway:
    """Razorpay Orders/Refunds API client.

    Every attempt at a write first looks for a result already recorded under
    the receipt, so a POST that reached Razorpay before the connection
    dropped is picked up by the next attempt instead of being sent again.
    """

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(
            base_url=settings.gateway_base_url,
            auth=(settings.gateway_key_id, settings.gateway_key_secret),
            timeout=httpx.Timeout(settings.gateway_timeout_seconds),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, **kwargs) -> dict:  # noqa: ANN003
        response = await self._client.request(method, path, **kwargs)
        if response.status_code == 429 or response.status_code >= 500:
            raise _RetryableStatusError(response.status_code, response.text)
        if response.status_code >= 400:
            logger.warning(
                "gateway.rejected",
                method=method,
                path=path,
                status=response.status_code,
            )
            raise GatewayError(f"Gateway rejected {method} {path}: {response.text}")
        return response.json()

    async def _with_retries(self, operation: str, call: Callable[[], Awaitable[dict]]) -> dict:
        """Run ``call`` until it succeeds, retrying transient failures.

        ``call`` must be safe to repeat: reads, or a write preceded by its
        own lookup.

        Raises:
            GatewayTimeoutError: The last attempt timed out.
            GatewayError: Non-retryable rejection, or retries exhausted.
        """
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._settings.gateway_max_retries),
            wait=wait_exponential(
                multiplier=self._settings.gateway_backoff_base_seconds,
                max=self._settings.gateway_backoff_base_seconds * 8,
            ),
            retry=retry_if_exception_type((httpx.TransportError, _RetryableStatusError)),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    data = await call()
        except httpx.TimeoutException as exc:
            logger.warning("gateway.timeout", operation=operation)
            raise GatewayTimeoutError(f"Gateway timed out on {operation}") from exc
        except (httpx.TransportError, _RetryableStatusError) as exc:
            logger.warning("gateway.unavailable", operation=operation, error=str(exc))
            raise GatewayError(f"Gateway unavailable: {exc}") from exc
        return data

    async def _find_or_create_order(self, receipt: str, amount: Decimal, currency: str) -> dict:
        existing = await self._send("GET", "/orders", params={"receipt": receipt})
        items = existing.get("items") or []
        if items:
            logger.info("gateway.order_reused", order_ref=items[0]["id"], receipt=receipt)
            return items[0]
        order = await self._send(
            "POST",
            "/orders",
            json={"amount": to_minor_units(amount), "currency": currency, "receipt": receipt},
        )
        logger.info("gateway.order_created", order_ref=order["id"], receipt=receipt)
        return order

    async def create_order(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayOrder:
        order = await self._with_retries(
            "create_order",
            lambda: self._find_or_create_order(idempotency_key, amount, currency),
        )
        return GatewayOrder(
            order_ref=order["id"],
            amount_minor=int(order["amount"]),
            currency=order.get("currency", currency),
            receipt=order.get("receipt", idempotency_key),
        )

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        message = f"{order_ref}|{payment_ref}".encode()
        return _signature_matches(self._settings.gateway_key_secret, message, signature)

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return _signature_matches(self._settings.gateway_webhook_secret, body, signature)

    async def _find_or_create_refund(
        self, payment_ref: str, amount: Decimal, receipt: str
    ) -> dict:
        existing = await self._send("GET", f"/payments/{payment_ref}/refunds")
        for item in existing.get("items") or []:
            if item.get("receipt") == receipt:
                logger.info("gateway.refund_reused", refund_ref=item["id"], receipt=receipt)
                return item
        refund = await self._send(
            "POST",
            f"/payments/{payment_ref}/refund",
            json={"amount": to_minor_units(amount), "receipt": receipt},
        )
        logger.info("gateway.refund_created", refund_ref=refund["id"], payment_ref=payment_ref)
        return refund

    async def refund(
        self, payment_ref: str, amount: Decimal, idempotency_key: str
    ) -> GatewayRefund:
        data = await self._with_retries(
            "refund",
            lambda: self._find_or_create_refund(payment_ref, amount, idempotency_key),
        )
        return GatewayRefund(refund_ref=data["id"], amount_minor=int(data["amount"]))


# ---------------------------------------------------------------------------
# Simulated
# ---------------------------------------------------------------------------
class SimulatedGateway:
    """Deterministic in-process gateway.

    Orders are keyed by receipt exactly like the Razorpay client, so retries
    with the same idempotency key return the same order. ``timeouts`` and
    ``failures`` make the next N create_order calls time out or fail.
    """

    def __init__(
        self,
        key_secret: str = "dev_gateway_secret",
        webhook_secret: str = "dev_webhook_secret",
        latency_seconds: float = 0.0,
    ) -> None:
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self._latency = latency_seconds
        self.orders: dict[str, GatewayOrder] = {}
        self.refunds: dict[str, GatewayRefund] = {}
        self.create_calls = 0
        self.timeouts = 0
        self.failures = 0

    async def create_order(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayOrder:
        self.create_calls += 1
        if self._latency:
            await asyncio.sleep(self._latency)
        if self.timeouts > 0:
            self.timeouts -= 1
            raise GatewayTimeoutError("Simulated gateway timeout")
        if self.failures > 0:
            self.failures -= 1
            raise GatewayError("Simulated gateway failure")

        order = self.orders.get(idempotency_key)
        if order is None:
            digest = hashlib.sha256(idempotency_key.encode()).hexdigest()[:14]
            order = GatewayOrder(
                order_ref=f"order_{digest}",
                amount_minor=to_minor_units(amount),
                currency=currency,
                receipt=idempotency_key,
            )
            self.orders[idempotency_key] = order
            logger.info("gateway.order_created", order_ref=order.order_ref, simulated=True)
        return order

    def sign(self, order_ref: str, payment_ref: str) -> str:
        """Checkout signature the client would receive from the gateway."""
        return compute_signature(self._key_secret, f"{order_ref}|{payment_ref}".encode())

    def sign_webhook(self, body: bytes) -> str:
        return compute_signature(self._webhook_secret, body)

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        message = f"{order_ref}|{payment_ref}".encode()
        return _signature_matches(self._key_secret, message, signature)

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        return _signature_matches(self._webhook_secret, body, signature)

    async def refund(
        self, payment_ref: str, amount: Decimal, idempotency_key: str
    ) -> GatewayRefund:
        refund = self.refunds.get(idempotency_key)
        if refund is None:
            refund = GatewayRefund(
                refund_ref=f"rfnd_{uuid.uuid4().hex[:14]}",
                amount_minor=to_minor_units(amount),
            )
            self.refunds[idempotency_key] = refund
            logger.info("gateway.refund_created", refund_ref=refund.refund_ref, simulated=True)
        return refund


def build_gateway(settings: Settings | None = None) -> PaymentGateway:
    """Gateway for the configured mode."""
    settings = settings or get_settings()
    if settings.gateway_mode == "razorpay":
        return RazorpayGateway(settings)
    return SimulatedGateway(
        key_secret=settings.gateway_key_secret,
        webhook_secret=settings.gateway_webhook_secret,
    )
