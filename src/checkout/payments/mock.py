"""Mock payment provider for local runs and tests."""

from __future__ import annotations

import secrets
import time

from checkout.plans import network_pay_currency

from .base import PaymentInvoice, PaymentRecord
from .signature import verify_signature


class MockPaymentProvider:
    provider_name = "mock"

    def __init__(self) -> None:
        # provider_payment_id -> status; tests flip these to simulate settlement
        self.statuses: dict[str, str] = {}
        self.order_ids: dict[str, str] = {}

    async def create_payment(
        self,
        *,
        amount: float,
        currency: str,
        network: str,
        order_id: str,
        description: str,
    ) -> PaymentInvoice:
        del currency, description  # Not needed for mock invoices.
        provider_payment_id = f"mock_{int(time.time())}_{secrets.token_hex(4)}"
        self.statuses[provider_payment_id] = "waiting"
        self.order_ids[provider_payment_id] = order_id
        return PaymentInvoice(
            provider=self.provider_name,
            provider_payment_id=provider_payment_id,
            pay_address=f"mock-{network}-{order_id.lower()}",
            pay_amount=round(float(amount), 2),
            pay_currency=network_pay_currency(network) or str(network),
        )

    async def get_status(self, provider_payment_id: str) -> str:
        return self.statuses.get(str(provider_payment_id), "waiting")

    async def list_payments(self, *, limit: int = 500) -> list[PaymentRecord]:
        records = [
            PaymentRecord(
                provider_payment_id=payment_id,
                order_id=self.order_ids.get(payment_id),
                status=status,
            )
            for payment_id, status in reversed(self.statuses.items())
        ]
        return records[: max(1, int(limit))]

    def verify_callback(self, raw_payload: bytes | str, signature: str | None, secret: str) -> bool:
        return verify_signature(raw_payload, signature, secret)
