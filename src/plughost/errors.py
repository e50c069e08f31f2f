"""Error taxonomy for the plugin host.

Every failure the gateway can surface is a :class:`PluginHostError`
subclass carrying an HTTP status, a machine-readable code and a
``retryable`` flag so the embedding UI can tell transient cold-start
problems apart from permanent ones.
"""

from __future__ import annotations

from typing import Any


class PluginHostError(Exception):
    """Base class — renders as ``{"error", "code", "details", "retryable"}``."""

    code: str = "INTERNAL_ERROR"
    status: int = 500
    retryable: bool = False

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.message,
            "code": self.code,
            "retryable": self.retryable,
            "details": self.details,
        }


class InvalidRequest(PluginHostError):
    code = "INVALID_REQUEST"
    status = 400


class AuthenticationFailed(PluginHostError):
    code = "AUTHENTICATION_ERROR"
    status = 401


class NotFoundError(PluginHostError):
    code = "NOT_FOUND"
    status = 404


class ExtractionFailed(PluginHostError):
    code = "EXTRACTION_FAILED"
    status = 500


class NoPortAvailableError(PluginHostError):
    code = "NO_PORT_AVAILABLE"
    status = 503
    retryable = True


class StartupFailed(PluginHostError):
    code = "STARTUP_FAILED"
    status = 502
    retryable = True


class ReadinessTimeout(PluginHostError):
    code = "READINESS_TIMEOUT"
    status = 502
    retryable = True


class ProxyFailure(PluginHostError):
    code = "PROXY_FAILURE"
    status = 502
    retryable = True


class BlobStoreError(Exception):
    """Raised by blob store backends; wrapped into ExtractionFailed by the extractor."""
