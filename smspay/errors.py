"""
Domain errors raised by the gateways and the confirmation orchestrator.

The HTTP layer in main.py maps these to status codes; nothing below the
HTTP layer knows about HTTP.
"""

from typing import Any, Optional


class SmsPayError(Exception):
    """Base error carrying a stable machine-readable code."""

    code = "SMSPAY_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ProviderUnavailable(SmsPayError):
    """Blockchain provider unreachable, rate-limited, or answered with an error."""

    code = "PROVIDER_UNAVAILABLE"


class CarrierError(SmsPayError):
    """SMS carrier rejected or failed to accept a message."""

    code = "CARRIER_ERROR"


class MalformedRequest(SmsPayError):
    """A callback or poll is missing required fields or headers."""

    code = "MALFORMED_REQUEST"


class UnknownOrTerminalSession(SmsPayError):
    """No record for the session id, or the record is already SENT."""

    code = "UNKNOWN_OR_TERMINAL_SESSION"


class PaymentNotConfirmed(SmsPayError):
    """Address, confirmation count or balance re-check failed."""

    code = "PAYMENT_NOT_CONFIRMED"


class UnknownCurrencyError(SmsPayError):
    code = "UNKNOWN_CURRENCY"
