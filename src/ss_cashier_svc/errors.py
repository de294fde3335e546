from typing import Optional


class CashierError(Exception):
    """Base class for billing errors raised by this package."""


class ConfigurationError(CashierError, ValueError):
    """The customer is not set up for the requested operation (no source, no Stripe customer)."""


class RemoteRequestError(CashierError):
    """
    Stripe rejected a request as invalid.

    :param message: The message reported by Stripe.
    :param code: Stripe's error code, e.g. ``resource_missing``.
    :param http_status: HTTP status of the rejected call.
    """

    def __init__(self, message: str, code: Optional[str] = None, http_status: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status

    @property
    def not_found(self) -> bool:
        return self.code == 'resource_missing' or self.http_status == 404


class InvoiceNotFoundError(CashierError, LookupError):
    pass


class SubscriptionNotFoundError(CashierError, LookupError):
    pass


class InvalidStateError(CashierError, ValueError):
    """The subscription is not in a state that allows the operation."""


class SubscriptionNotSavedError(CashierError):
    """The local record could not be saved after Stripe accepted the change."""
