"""Checkout domain errors."""


class CheckoutError(RuntimeError):
    """Base checkout domain error."""


class ValidationError(CheckoutError):
    """Raised when user input is invalid; the conversation re-prompts in place."""


class NotFoundError(CheckoutError):
    """Raised when a requested plan or record doesn't exist."""


class DuplicateOrderError(CheckoutError):
    """Raised when the handle already holds a live order or subscription for the plan."""

    def __init__(self, message: str, *, handle: str, plan_id: int, reason: str) -> None:
        super().__init__(message)
        self.handle = handle
        self.plan_id = plan_id
        self.reason = reason


class ProviderUnavailable(CheckoutError):
    """Raised when the payment provider cannot be reached or answers with an error."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class SignatureInvalid(CheckoutError):
    """Raised when a provider callback signature doesn't match."""


class OrderNotFound(CheckoutError):
    """Raised when a provider callback references an unknown order."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id!r} not found")
        self.order_id = order_id


class UnmappedPlanTerm(CheckoutError):
    """Raised when a plan's billing term can't be mapped to a duration."""

    def __init__(self, plan_name: str) -> None:
        super().__init__(f"Cannot derive billing term for plan {plan_name!r}")
        self.plan_name = plan_name


class StoreUnavailable(CheckoutError):
    """Raised when the order store fails; the operation can be retried."""
