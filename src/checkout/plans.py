"""Plan terms, payment networks and subscription expiry arithmetic."""

from __future__ import annotations

import calendar
import logging
import re
from datetime import date
from typing import Final

from checkout.errors import UnmappedPlanTerm
from checkout.models import Plan


logger = logging.getLogger(__name__)

PRICE_CURRENCY: Final[str] = "usd"

TERM_MONTHLY: Final[str] = "monthly"
TERM_QUARTERLY: Final[str] = "quarterly"
TERM_SEMIANNUAL: Final[str] = "semiannual"
TERM_YEARLY: Final[str] = "yearly"

TERM_MONTHS: Final[dict[str, int]] = {
    TERM_MONTHLY: 1,
    TERM_QUARTERLY: 3,
    TERM_SEMIANNUAL: 6,
    TERM_YEARLY: 12,
}

# Legacy plans carry no explicit term; the duration is matched against the
# plan name. Order matters: "semiannual" must win over "annual".
_NAME_TERM_PATTERNS: Final[tuple[tuple[str, str], ...]] = (
    ("semiannual", TERM_SEMIANNUAL),
    ("halfyear", TERM_SEMIANNUAL),
    ("quarterly", TERM_QUARTERLY),
    ("monthly", TERM_MONTHLY),
    ("yearly", TERM_YEARLY),
    ("annual", TERM_YEARLY),
)

TERM_TITLES: Final[dict[str, str]] = {
    TERM_MONTHLY: "1 month",
    TERM_QUARTERLY: "3 months",
    TERM_SEMIANNUAL: "6 months",
    TERM_YEARLY: "12 months",
}

# network code (callback token) -> (button title, provider pay_currency)
PAYMENT_NETWORKS: Final[dict[str, tuple[str, str]]] = {
    "usdt_trc20": ("USDT · TRC20", "usdttrc20"),
    "usdt_erc20": ("USDT · ERC20", "usdterc20"),
    "usdt_bep20": ("USDT · BEP20", "usdtbsc"),
    "btc": ("Bitcoin", "btc"),
    "eth": ("Ethereum", "eth"),
}


def network_pay_currency(network: str) -> str | None:
    entry = PAYMENT_NETWORKS.get(str(network or "").strip().lower())
    return entry[1] if entry else None


def network_title(network: str) -> str:
    entry = PAYMENT_NETWORKS.get(str(network or "").strip().lower())
    return entry[0] if entry else str(network)


def term_from_plan_name(name: str) -> str | None:
    """Match a billing term in a free-text plan name (case-insensitive)."""
    normalized = re.sub(r"[^a-z]", "", str(name or "").lower())
    for needle, term in _NAME_TERM_PATTERNS:
        if needle in normalized:
            return term
    return None


def resolve_term(plan: Plan) -> str:
    """Return the plan's billing term, preferring the explicit field."""
    explicit = str(plan.term or "").strip().lower()
    if explicit in TERM_MONTHS:
        return explicit
    if explicit:
        logger.warning("Plan %s has unknown term %r; trying plan name", plan.id, plan.term)

    inferred = term_from_plan_name(plan.name)
    if inferred is None:
        raise UnmappedPlanTerm(plan.name)
    logger.warning(
        "Plan %s (%s) has no explicit term; inferred %s from its name",
        plan.id,
        plan.name,
        inferred,
    )
    return inferred


def add_months(value: date, months: int) -> date:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = value.month - 1 + int(months)
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def compute_expiry(plan: Plan, activated_on: date) -> date:
    """Expiry date for a subscription activated on the given day.

    Raises UnmappedPlanTerm when the term can't be determined.
    """
    return add_months(activated_on, TERM_MONTHS[resolve_term(plan)])


def plan_term_title(plan: Plan) -> str:
    try:
        return TERM_TITLES[resolve_term(plan)]
    except UnmappedPlanTerm:
        return "custom term"
