"""Payment Gateway Protocol.

The gateway is an opaque capability with three operations: create an order,
verify a checkout signature, refund a captured payment. This is a Protocol
(structural subtyping) so concrete gateways don't need to inherit from a
base class.

The domain layer has ZERO imports from httpx or any gateway SDK.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@dataclass(frozen=True)
class GatewayOrder:
    """An order created at the gateway.

    Attributes:
        order_ref: Gateway order id the client checks out against.
        amount_minor: Amount in the currency's minor unit (paise, cents).
        currency: ISO currency code.
        receipt: Our idempotency key echoed back by the gateway.
    """

    order_ref: str
    amount_minor: int
    currency: str
    receipt: str


@dataclass(frozen=True)
class GatewayRefund:
    refund_ref: str
    amount_minor: int


@runtime_checkable
class PaymentGateway(Protocol):
    """Protocol that all gateway implementations must satisfy.

    Concrete implementations:
        - infrastructure/gateway.py RazorpayGateway (httpx)
        - infrastructure/gateway.py SimulatedGateway (development, tests)
    """

    async def create_order(
        self, idempotency_key: str, amount: Decimal, currency: str
    ) -> GatewayOrder:
        """Create (or return the existing) order for this idempotency key.

        Raises:
            GatewayTimeoutError: The gateway did not answer in time.
            GatewayError: The gateway rejected the call.
        """
        ...

    def verify_signature(self, order_ref: str, payment_ref: str, signature: str) -> bool:
        """Check the checkout signature over (order_ref, payment_ref)."""
        ...

    def verify_webhook(self, body: bytes, signature: str) -> bool:
        """Check the webhook signature over the raw request body."""
        ...

    async def refund(
        self, payment_ref: str, amount: Decimal, idempotency_key: str
    ) -> GatewayRefund:
        """Refund a captured payment."""
        ...
