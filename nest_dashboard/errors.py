"""Exceptions raised by the dashboard backend.

Every failure that reaches the browser is one of these classes. Each
carries the taxonomy name used in the JSON payload, the HTTP status to
answer with, and whether the client must discard its session and log in
again.
"""

from __future__ import annotations

from typing import Any


class DashboardError(Exception):
    """Base exception for dashboard errors."""

    code = "UpstreamError"
    status_code = 500
    requires_reauth = False

    def __init__(
        self,
        details: str,
        *,
        upstream_status: int | None = None,
        body: Any = None,  # noqa: ANN401
    ) -> None:
        """Initialize the error with a human-readable detail message."""
        super().__init__(details)
        self.details = details
        self.upstream_status = upstream_status
        self.body = body

    @property
    def http_status(self) -> int:
        """HTTP status the backend answers with."""
        return self.status_code

    def to_payload(self) -> dict[str, Any]:
        """Return the structured payload sent to the presentation layer."""
        payload: dict[str, Any] = {
            "error": self.code,
            "details": self.details,
            "requiresReauth": self.requires_reauth,
        }
        if self.body is not None:
            payload["response"] = self.body
        return payload


class AuthRequired(DashboardError):
    """Raised when the session holds no usable credential."""

    code = "AuthRequired"
    status_code = 401
    requires_reauth = True


class AuthExpired(DashboardError):
    """Raised when the device API rejects the access token."""

    code = "AuthExpired"
    status_code = 401
    requires_reauth = True


class ConsentRequired(DashboardError):
    """Raised when device access consent must be granted again."""

    code = "ConsentRequired"
    status_code = 403
    requires_reauth = True


class PermissionDenied(DashboardError):
    """Raised when the project or API is not provisioned for this account."""

    code = "PermissionDenied"
    status_code = 403


class ProjectOrDeviceNotFound(DashboardError):
    """Raised when the project id or device id is unknown upstream."""

    code = "ProjectOrDeviceNotFound"
    status_code = 404


class RateLimited(DashboardError):
    """Raised when upstream keeps answering 429 after all retries."""

    code = "RateLimited"
    status_code = 429


class ValidationError(DashboardError):
    """Raised for invalid user input before any upstream call."""

    code = "ValidationError"
    status_code = 400


class InvalidModeError(DashboardError):
    """Raised when a write is not allowed in the device's current mode."""

    code = "InvalidModeError"
    status_code = 400


class TransientError(DashboardError):
    """Raised when network or server failures outlast the retry policy."""

    code = "TransientError"
    status_code = 503


class UpstreamError(DashboardError):
    """Raised for any other non-success upstream response."""

    code = "UpstreamError"
    status_code = 502

    @property
    def http_status(self) -> int:
        """Mirror the upstream status when there is one."""
        return self.upstream_status or self.status_code
