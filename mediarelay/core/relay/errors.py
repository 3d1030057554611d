from __future__ import annotations

from typing import Any


class RelayError(Exception):
    """
    Base class for every failure the relay reports to its client.

    Parameters:
        message (str): Human-readable message placed in the JSON envelope.
        status_code (int | None): Overrides the class default HTTP status.
    """

    status_code: int = 500

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class InvalidTarget(RelayError):
    """Missing, oversized, malformed or self-referential URL."""

    status_code = 400


class BlockedTarget(RelayError):
    """Target resolves to a private, loopback, link-local or metadata address."""

    status_code = 403


class ForbiddenOrigin(RelayError):
    status_code = 403


class RateLimited(RelayError):
    status_code = 429


class MethodNotAllowed(RelayError):
    status_code = 405


class UpstreamRejected(RelayError):
    """Upstream answered with a non-success status after the retry policy."""

    status_code = 502


class UpstreamUnavailable(RelayError):
    """Connection-level failure talking to upstream (DNS, TLS, reset...)."""

    status_code = 502


class UpstreamTimeout(RelayError):
    status_code = 504


class ImageFetchFailed(RelayError):
    status_code = 500


class InternalError(RelayError):
    status_code = 500


def error_payload(message: str) -> dict[str, Any]:
    """
    Build the JSON envelope shared by every error response.
    """
    return {"success": False, "error": message}
