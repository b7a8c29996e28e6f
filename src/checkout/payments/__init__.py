"""Payment provider abstractions for checkout billing."""

from .base import FINAL_SUCCESS_STATUSES, PaymentInvoice, PaymentProvider, PaymentRecord, is_final_success
from .mock import MockPaymentProvider
from .nowpayments import NowPaymentsProvider
from .signature import canonicalize, sign_payload, verify_signature

__all__ = [
    "FINAL_SUCCESS_STATUSES",
    "PaymentInvoice",
    "PaymentProvider",
    "PaymentRecord",
    "MockPaymentProvider",
    "NowPaymentsProvider",
    "canonicalize",
    "is_final_success",
    "sign_payload",
    "verify_signature",
]
