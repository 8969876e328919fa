"""Error taxonomy shared by the client, the queue and the sync engine."""

from typing import Optional

__all__ = [
    "MirrorError",
    "RemoteError",
    "TransportError",
    "ServerError",
    "RateLimitError",
    "RemoteApplicationError",
    "RemoteAuthError",
    "ValidationError",
    "TransactionError",
]


class MirrorError(Exception):
    """Base error carrying a machine-readable kind and structured details."""

    kind = "error"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "details": self.details}


class RemoteError(MirrorError):
    """A remote call failed."""

    kind = "remote"


class TransportError(RemoteError):
    """No response: connection refused, DNS failure or timeout."""

    kind = "transport"


class ServerError(RemoteError):
    """The remote answered with a 5xx status other than a rate-limit signal."""

    kind = "server"


class RateLimitError(RemoteError):
    """The remote asked us to slow down (HTTP 429/503)."""

    kind = "rate_limit"

    def __init__(
        self,
        message: str,
        retry_after: Optional[float] = None,
        details: Optional[dict] = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class RemoteApplicationError(RemoteError):
    """Well-formed error answer, HTTP 4xx or an unparseable payload. Not retried."""

    kind = "application"


class RemoteAuthError(RemoteApplicationError):
    """Authentication error (401/403)."""

    kind = "auth"


class ValidationError(MirrorError):
    """A remote row cannot be mapped onto the local schema."""

    kind = "validation"


class TransactionError(MirrorError):
    """Begin/commit/rollback failed or was called in the wrong state."""

    kind = "transaction"
