"""
Error taxonomy for the credential-bridging gateway.

Every error carries the OAuth-style ``error_code`` and the HTTP status the
gateway answers with, so route handlers can raise and let the application's
exception handler render the response.
"""


class GatewayError(Exception):
    """Base class for all gateway errors."""

    error_code = "server_error"
    status_code = 500

    def __init__(self, description: str | None = None):
        self.description = description or self.__class__.__doc__ or self.error_code
        super().__init__(self.description)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error_code, "error_description": self.description}


class InvalidRequest(GatewayError):
    """Malformed or missing request parameters."""

    error_code = "invalid_request"
    status_code = 400


class UnknownGrant(GatewayError):
    """Authorization grant is unknown, already consumed, or expired."""

    error_code = "invalid_grant"
    status_code = 400


class InvalidGrant(GatewayError):
    """Authorization code cannot be exchanged."""

    error_code = "invalid_grant"
    status_code = 400


class UnsupportedGrantType(GatewayError):
    """Only the authorization_code grant is supported."""

    error_code = "unsupported_grant_type"
    status_code = 400


class Unauthorized(GatewayError):
    """Missing, invalid, or expired credentials. Re-authentication required."""

    error_code = "unauthorized"
    status_code = 401


class SessionNotFound(Unauthorized):
    """No live session for the given identifier."""


class UpstreamRejected(GatewayError):
    """The upstream task API rejected the credential."""

    error_code = "upstream_rejected"
    status_code = 401


class UpstreamUnavailable(GatewayError):
    """The upstream task API could not be reached or failed."""

    error_code = "upstream_unavailable"
    status_code = 502
