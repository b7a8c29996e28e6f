"""Base contracts for checkout payment providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


# Provider statuses that mean the money has settled.
FINAL_SUCCESS_STATUSES = frozenset({"finished", "confirmed", "sending"})


def is_final_success(status: str | None) -> bool:
    return str(status or "").strip().lower() in FINAL_SUCCESS_STATUSES


@dataclass(frozen=True)
class PaymentInvoice:
    """Normalized provider answer to a create-payment call."""

    provider: str
    provider_payment_id: str | None
    pay_address: str
    pay_amount: float | None
    pay_currency: str


@dataclass(frozen=True)
class PaymentRecord:
    """One entry of the provider's payment history."""

    provider_payment_id: str | None
    order_id: str | None
    status: str
    payload: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(Protocol):
    """Provider interface used by the checkout flow and the webhook endpoint."""

    provider_name: str

    async def create_payment(
        self,
        *,
        amount: float,
        currency: str,
        network: str,
        order_id: str,
        description: str,
    ) -> PaymentInvoice:
        """Create a payment and return its deposit address."""

    async def get_status(self, provider_payment_id: str) -> str:
        """Return the provider's current status string for a payment."""

    async def list_payments(self, *, limit: int = 500) -> list[PaymentRecord]:
        """Most recent payments, newest first."""

    def verify_callback(self, raw_payload: bytes | str, signature: str | None, secret: str) -> bool:
        """Check an inbound notification signature."""
