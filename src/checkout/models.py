"""Checkout domain models."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Mapping


ORDER_PENDING = "pending"
ORDER_PAID = "paid"
ORDER_FAILED = "failed"

SUBSCRIPTION_PENDING = "pending"
SUBSCRIPTION_ACTIVE = "active"
SUBSCRIPTION_EXPIRED = "expired"

REVIEW_UNMAPPED_TERM = "unmapped_plan_term"
REVIEW_AMOUNT_MISMATCH = "amount_mismatch"


def _parse_features(raw: Any) -> list[str]:
    if not raw:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item) for item in raw]
    try:
        parsed = json.loads(str(raw))
    except ValueError:
        return [line.strip() for line in str(raw).splitlines() if line.strip()]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [str(parsed)]


@dataclass(slots=True)
class Plan:
    id: int
    name: str
    price_usd: float
    term: str | None = None
    features: list[str] = field(default_factory=list)
    channel_id: str | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Plan":
        return cls(
            id=int(row["id"]),
            name=str(row["name"]),
            price_usd=float(row["price_usd"]),
            term=(str(row["term"]).strip().lower() or None) if row["term"] else None,
            features=_parse_features(row["features"]),
            channel_id=str(row["channel_id"]) if row["channel_id"] else None,
            is_active=bool(row["is_active"]),
        )


@dataclass(slots=True)
class Order:
    order_id: str
    user_handle: str
    chat_id: int
    plan_id: int
    amount_usd: float
    pay_currency: str
    pay_network: str
    status: str
    created_at: str
    pay_address: str | None = None
    pay_amount: float | None = None
    provider_payment_id: str | None = None
    paid_at: str | None = None
    finalized_at: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.status == ORDER_PAID

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Order":
        return cls(
            order_id=str(row["order_id"]),
            user_handle=str(row["user_handle"]),
            chat_id=int(row["chat_id"]),
            plan_id=int(row["plan_id"]),
            amount_usd=float(row["amount_usd"]),
            pay_currency=str(row["pay_currency"]),
            pay_network=str(row["pay_network"]),
            status=str(row["status"]),
            created_at=str(row["created_at"]),
            pay_address=row["pay_address"],
            pay_amount=float(row["pay_amount"]) if row["pay_amount"] is not None else None,
            provider_payment_id=row["provider_payment_id"],
            paid_at=row["paid_at"],
            finalized_at=row["finalized_at"],
        )


@dataclass(slots=True)
class Subscriber:
    handle: str
    subscription_status: str
    chat_id: int | None = None
    whatsapp: str | None = None
    full_name: str | None = None
    email: str | None = None
    plan_id: int | None = None
    expires_on: str | None = None
    review_reason: str | None = None
    registered_on: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Subscriber":
        return cls(
            handle=str(row["handle"]),
            subscription_status=str(row["subscription_status"]),
            chat_id=int(row["chat_id"]) if row["chat_id"] is not None else None,
            whatsapp=row["whatsapp"],
            full_name=row["full_name"],
            email=row["email"],
            plan_id=int(row["plan_id"]) if row["plan_id"] is not None else None,
            expires_on=row["expires_on"],
            review_reason=row["review_reason"],
            registered_on=row["registered_on"],
            updated_at=row["updated_at"],
        )
