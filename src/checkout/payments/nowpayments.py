"""NOWPayments HTTP client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp

from checkout.errors import ProviderUnavailable
from checkout.plans import network_pay_currency

from .base import PaymentInvoice, PaymentRecord
from .signature import verify_signature


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SEC = 15
MAX_PAYMENTS_PAGE = 500


def _to_float(value: Any) -> float | None:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class NowPaymentsProvider:
    provider_name = "nowpayments"

    def __init__(
        self,
        *,
        api_key: str,
        api_url: str,
        callback_url: str | None = None,
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url.rstrip("/")
        self.callback_url = callback_url
        self.timeout_sec = max(1, int(timeout_sec))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Single HTTP call; every failure becomes ProviderUnavailable. No retries."""
        if not self.api_key:
            logger.error("NOWPAYMENTS_API_KEY is not configured")
            raise ProviderUnavailable("Payment provider is not configured")

        headers = {
            "x-api-key": self.api_key,
            "Accept": "application/json",
        }
        url = f"{self.api_url}{path}"
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, headers=headers, json=json_body, params=params) as resp:
                    if not 200 <= resp.status < 300:
                        body = await resp.text()
                        logger.warning("nowpayments: %s %s -> %s %s", method, path, resp.status, body[:300])
                        raise ProviderUnavailable(f"Provider returned HTTP {resp.status}", status=resp.status)
                    data = await resp.json(content_type=None)
        except asyncio.TimeoutError as error:
            logger.error("nowpayments: %s %s timed out after %ss", method, path, self.timeout_sec)
            raise ProviderUnavailable("Provider request timed out") from error
        except aiohttp.ClientError as error:
            logger.error("nowpayments: %s %s failed: %s", method, path, error)
            raise ProviderUnavailable(f"Provider request failed: {error}") from error
        except ValueError as error:
            logger.error("nowpayments: %s %s returned malformed JSON", method, path)
            raise ProviderUnavailable("Provider returned malformed JSON") from error

        if not isinstance(data, dict):
            raise ProviderUnavailable("Provider returned an unexpected payload")
        return data

    async def create_payment(
        self,
        *,
        amount: float,
        currency: str,
        network: str,
        order_id: str,
        description: str,
    ) -> PaymentInvoice:
        pay_currency = network_pay_currency(network) or str(network).strip().lower()
        body: dict[str, Any] = {
            "price_amount": float(amount),
            "price_currency": str(currency).lower(),
            "pay_currency": pay_currency,
            "order_id": str(order_id),
            "order_description": str(description),
        }
        if self.callback_url:
            body["ipn_callback_url"] = self.callback_url

        data = await self._request("POST", "/payment", json_body=body)
        pay_address = str(data.get("pay_address") or "").strip()
        if not pay_address:
            logger.error("nowpayments: no pay_address for order %s: %s", order_id, data)
            raise ProviderUnavailable("Provider did not return a deposit address")

        payment_id = data.get("payment_id")
        logger.info("nowpayments: payment %s created for order %s", payment_id, order_id)
        return PaymentInvoice(
            provider=self.provider_name,
            provider_payment_id=str(payment_id) if payment_id is not None else None,
            pay_address=pay_address,
            pay_amount=_to_float(data.get("pay_amount")),
            pay_currency=str(data.get("pay_currency") or pay_currency),
        )

    async def get_status(self, provider_payment_id: str) -> str:
        data = await self._request("GET", f"/payment/{provider_payment_id}")
        status = str(data.get("payment_status") or "").strip().lower()
        if not status:
            raise ProviderUnavailable("Provider did not return a payment status")
        return status

    async def list_payments(self, *, limit: int = MAX_PAYMENTS_PAGE) -> list[PaymentRecord]:
        params = {
            "limit": str(max(1, min(int(limit), MAX_PAYMENTS_PAGE))),
            "page": "0",
            "sortBy": "created_at",
            "orderBy": "desc",
        }
        data = await self._request("GET", "/payment/", params=params)
        items = data.get("data")
        if not isinstance(items, list):
            raise ProviderUnavailable("Provider returned an unexpected payment list")

        records = []
        for item in items:
            if not isinstance(item, dict):
                continue
            payment_id = item.get("payment_id")
            order_id = str(item.get("order_id") or "").strip()
            records.append(
                PaymentRecord(
                    provider_payment_id=str(payment_id) if payment_id is not None else None,
                    order_id=order_id or None,
                    status=str(item.get("payment_status") or "").strip().lower(),
                    payload=item,
                )
            )
        return records

    def verify_callback(self, raw_payload: bytes | str, signature: str | None, secret: str) -> bool:
        return verify_signature(raw_payload, signature, secret)
