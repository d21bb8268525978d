"""
Error taxonomy for the ingestion boundary and the delivery pipeline.

Every error carries the HTTP status it maps to and a stable machine code.
Ingestion-side errors are converted to JSON at the API boundary (see the
exception handler in eventrelay.main); DeliveryError never escapes the worker and is
only used to classify an attempt before it is recorded on the delivery row.
"""
from typing import Any, Optional


class EventRelayError(Exception):
    """Base class for all operational errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthenticationError(EventRelayError):
    status_code = 401
    code = "authentication_error"


class MalformedTokenError(AuthenticationError):
    code = "malformed_token"


class TokenExpiredError(AuthenticationError):
    code = "token_expired"


class InvalidSignatureError(AuthenticationError):
    code = "invalid_signature"


class OriginMismatchError(AuthenticationError):
    status_code = 403
    code = "origin_mismatch"


class ConfigurationError(EventRelayError):
    """
    Missing workspace signing key or similar server-side misconfiguration.

    Reported to the caller as a generic 401 so a misconfigured workspace is
    indistinguishable from a forged token.
    """

    status_code = 401
    code = "configuration_error"
    public_message = "Token verification failed."


class ValidationError(EventRelayError):
    status_code = 400
    code = "validation_error"


class NotFoundError(EventRelayError):
    status_code = 404
    code = "not_found"


class RateLimitError(EventRelayError):
    status_code = 429
    code = "rate_limit_exceeded"

    def __init__(self, message: str, result=None):
        super().__init__(message)
        self.result = result


class DeliveryError(EventRelayError):
    """Outcome classification for a failed webhook attempt."""

    code = "delivery_error"

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        response_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.response_code = response_code
