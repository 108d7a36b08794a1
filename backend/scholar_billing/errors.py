"""
Billing error taxonomy.

Every error raised by the billing services subclasses BillingError and
carries the HTTP status the API should answer with. The FastAPI handler in
main.py renders them as {"error": <message>}.
"""


class BillingError(Exception):
    """Base class for billing errors surfaced to HTTP callers."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConfigurationError(BillingError):
    """A required secret or setting is missing. Not recoverable."""


class InputValidationError(BillingError):
    """The caller sent an incomplete or invalid request."""

    status_code = 400


class SignatureVerificationError(BillingError):
    """A webhook payload failed Stripe signature verification."""

    status_code = 400


class UpstreamError(BillingError):
    """A Stripe API call failed or timed out. Safe to retry."""

    status_code = 502


class NotFoundError(BillingError):
    """There is no Stripe customer or subscription to act on."""

    status_code = 404
