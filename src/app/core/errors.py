"""Application exceptions.

Each exception carries the HTTP status code it maps to, so the API layer
can render a consistent error envelope without knowing where the error was
raised. Upstream (SAP CRM) failures map to the gateway family (502), local
data problems to the client-error family (400), and exhausted lookups to 404.
"""

from __future__ import annotations


class AppError(Exception):
    """Base exception for all application errors."""

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ── Upstream CRM ────────────────────────────────────────────────────────────


class UpstreamError(AppError):
    """The upstream CRM could not be asked, or answered with an error."""

    status_code = 502


class UpstreamUnreachable(UpstreamError):
    """Network-level failure talking to the upstream CRM."""


class UpstreamBadResponse(UpstreamError):
    """Upstream CRM answered with a non-2xx status or an unreadable body."""

    def __init__(self, upstream_status: int, body: str, reason: str = "") -> None:
        message = f"HTTP {upstream_status}"
        if reason:
            message += f": {reason}"
        if body:
            message += f" - {body}"
        super().__init__(message)
        self.upstream_status = upstream_status
        self.body = body


# ── Local store ─────────────────────────────────────────────────────────────


class NotFoundError(AppError):
    """Record absent from the local store (and upstream, where consulted)."""

    status_code = 404


class DuplicateKeyError(AppError):
    """Insert or update would violate the unique business opportunity id."""

    status_code = 400

    def __init__(self, opportunity_id: str) -> None:
        super().__init__(f"Opportunity ID already exists: {opportunity_id}")
        self.opportunity_id = opportunity_id


class RecordValidationError(AppError):
    """Record fields rejected by the store layer's schema."""

    status_code = 400
