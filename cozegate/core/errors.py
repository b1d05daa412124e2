"""Project error hierarchy.

Every error carries the HTTP status and the ``error.type`` string the
router renders for it, so handlers only need one translation helper.
"""


class CozeGateError(Exception):
    """Base error."""

    status_code = 500
    error_type = "cozegate_error"

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message or self.error_type
        self.code = code or self.error_type


class ValidationError(CozeGateError):
    """Inbound message shape is malformed or unsupported."""

    status_code = 400
    error_type = "invalid_request_error"


class AuthError(CozeGateError):
    """Missing or malformed bearer token."""

    status_code = 401
    error_type = "authentication_error"


class PayloadTooLargeError(CozeGateError):
    status_code = 413
    error_type = "payload_too_large"


class ConfigurationError(CozeGateError):
    """Bot table cannot resolve an identity for the request."""

    status_code = 500
    error_type = "configuration_error"


class UpstreamError(CozeGateError):
    error_type = "upstream_error"


class UpstreamApplicationError(UpstreamError):
    """Upstream answered 2xx but reported a non-zero ``code`` in the body."""

    error_type = "upstream_application_error"


class UpstreamTransportError(UpstreamError):
    """Non-2xx HTTP status or network failure talking to upstream."""

    error_type = "upstream_transport_error"

    def __init__(self, message: str = "", *, status_code: int = 500, code: str | None = None) -> None:
        super().__init__(message, code=code)
        self.status_code = status_code


class UpstreamTimeoutError(UpstreamError):
    status_code = 504
    error_type = "upstream_timeout"


class UpstreamProtocolError(UpstreamError):
    """Upstream response does not match the expected schema."""

    error_type = "upstream_protocol_error"
