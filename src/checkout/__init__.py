"""Chat checkout: plans, orders, provider payments and subscriber lifecycle."""

from checkout.errors import (
    CheckoutError,
    DuplicateOrderError,
    NotFoundError,
    OrderNotFound,
    ProviderUnavailable,
    SignatureInvalid,
    StoreUnavailable,
    UnmappedPlanTerm,
    ValidationError,
)

__all__ = [
    "CheckoutError",
    "DuplicateOrderError",
    "NotFoundError",
    "OrderNotFound",
    "ProviderUnavailable",
    "SignatureInvalid",
    "StoreUnavailable",
    "UnmappedPlanTerm",
    "ValidationError",
]
