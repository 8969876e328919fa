"""Protocol types for SyncEngine dependencies.

Defines the interfaces that SyncEngine requires from its collaborators,
so tests can hand in fakes and the store package stays import-independent.
"""

from datetime import datetime
from typing import Any, Callable, ContextManager, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from .types import Filter, RemoteResult, RequestOptions

T = TypeVar("T")


@runtime_checkable
class RemoteClientProtocol(Protocol):
    """Interface for executing calls against the Gripp API."""

    def execute(
        self,
        method: str,
        filters: Sequence[Filter] = (),
        options: Optional[RequestOptions] = None,
        retry: bool = True,
    ) -> RemoteResult: ...


@runtime_checkable
class MirrorRepositoryProtocol(Protocol):
    """Upsert access to one mirror table."""

    def upsert(self, row: dict, synced_at: str) -> tuple[int, bool]: ...

    def local_id_for(self, remote_id: Optional[int]) -> Optional[int]: ...


@runtime_checkable
class ChildRepositoryProtocol(Protocol):
    """Wholesale replacement of a parent's child rows."""

    def replace_for_parent(self, parent_id: int, rows: list[dict], synced_at: str) -> int: ...


@runtime_checkable
class SyncStatusProtocol(Protocol):
    """Interface for per-entity sync bookkeeping."""

    def get(self, entity: str) -> Any: ...

    def mark_in_progress(self, entity: str) -> None: ...

    def mark_success(
        self,
        entity: str,
        sync_time: datetime,
        incremental: bool,
        count: int,
        partial_failures: int = 0,
    ) -> datetime: ...

    def mark_error(self, entity: str, message: str) -> None: ...

    def is_due(self, entity: str, now: Optional[datetime] = None) -> bool: ...


@runtime_checkable
class UnitOfWorkProtocol(Protocol):
    """Transactional scope exposing the mirror repositories."""

    projects: MirrorRepositoryProtocol
    employees: MirrorRepositoryProtocol
    hours: MirrorRepositoryProtocol
    invoices: MirrorRepositoryProtocol
    invoice_lines: ChildRepositoryProtocol
    absence_requests: MirrorRepositoryProtocol
    absence_request_lines: ChildRepositoryProtocol
    sync_status: SyncStatusProtocol

    @property
    def in_transaction(self) -> bool: ...

    def begin_transaction(self) -> None: ...

    def commit_transaction(self) -> None: ...

    def rollback_transaction(self) -> None: ...

    def with_transaction(self, fn: Callable[[], T]) -> T: ...

    def transaction(self) -> ContextManager[Any]: ...
