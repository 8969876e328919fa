"""Sync module - talks to the Gripp API and mirrors entities locally."""

from .errors import (
    MirrorError,
    RateLimitError,
    RemoteApplicationError,
    RemoteAuthError,
    RemoteError,
    ServerError,
    TransactionError,
    TransportError,
    ValidationError,
)
from .http_client import GrippClient
from .request_queue import RequestQueue
from .retry import RetryConfig, retry_with_backoff
from .sync_engine import SyncEngine
from .types import EntitySyncResult, Filter, RemoteResult, RequestOptions, RunResult
from .protocols import RemoteClientProtocol, UnitOfWorkProtocol

__all__ = [
    "GrippClient",
    "RequestQueue",
    "SyncEngine",
    "RetryConfig",
    "retry_with_backoff",
    "Filter",
    "RequestOptions",
    "RemoteResult",
    "EntitySyncResult",
    "RunResult",
    "RemoteClientProtocol",
    "UnitOfWorkProtocol",
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
