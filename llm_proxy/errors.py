from __future__ import annotations

from typing import Any

from fastapi import status


class ProxyError(Exception):
    """Base class for errors that map directly onto an HTTP response."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, error: str, /, **extra: Any) -> None:
        super().__init__(error)
        self.message = error
        self.extra = extra

    def to_payload(self) -> dict[str, Any]:
        return {"error": self.message, **self.extra}


class StoreValidationError(ProxyError):
    """Raised when admin input for the operational store is malformed."""

    status_code = status.HTTP_400_BAD_REQUEST


class AdminAuthError(ProxyError):
    status_code = status.HTTP_401_UNAUTHORIZED


class UpstreamUnavailableError(ProxyError):
    """Raised when no answer at all was received from an upstream."""

    status_code = status.HTTP_502_BAD_GATEWAY


class AuthConfigurationError(RuntimeError):
    """Raised when admin authentication is configured unsafely."""
