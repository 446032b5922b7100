"""
Error taxonomy shared by the wallet backends, the invoice service and the API.

Each error carries the HTTP status the API answers with and a message that is
safe to show to a visitor.
"""

from typing import Optional


class TipJarError(Exception):
    status = 500
    message = "Something went wrong. Please try again later."

    def __init__(self, message: Optional[str] = None, status: Optional[int] = None):
        self.message = message or self.message
        if status is not None:
            self.status = status
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message}


class InvalidAmount(TipJarError):
    status = 400
    message = "Invalid amount. Please provide a positive number."


class MissingParameter(TipJarError):
    status = 400
    message = "Missing required parameter"


class ConfigurationError(TipJarError):
    """Backend credentials or URL are absent or malformed."""
    status = 500
    message = "Lightning backend is not configured"


class NodeUnavailable(TipJarError):
    """The upstream Lightning node or wallet cannot be reached."""
    status = 503
    message = "Unable to connect to the Lightning Network. Please try again later."


class BackendError(TipJarError):
    """Generic upstream failure; keeps the upstream status/detail when known."""
    status = 500
    message = "Failed to create invoice. Please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        upstream_status: Optional[int] = None,
        upstream_detail: Optional[str] = None,
    ):
        super().__init__(message, status)
        self.upstream_status = upstream_status
        self.upstream_detail = upstream_detail


class InternalError(TipJarError):
    status = 500
    message = "Internal server error"


class ModeChangeForbidden(TipJarError):
    status = 403
    message = "Mode can only be changed in development environment"
