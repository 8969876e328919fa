"""Sync engine - mirrors Gripp entities into the local store."""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional, Sequence

from ..config import ENTITY_ORDER, SyncSettings
from .errors import MirrorError, RemoteAuthError, RemoteError, ValidationError
from .mappers import (
    map_absence_line,
    map_absence_request,
    map_employee,
    map_hour,
    map_invoice,
    map_invoice_line,
    map_project,
)
from .protocols import RemoteClientProtocol, UnitOfWorkProtocol
from .retry import calculate_delay
from .types import (
    EQUALS,
    GREATEREQUALS,
    EntitySyncResult,
    Filter,
    Ordering,
    Paging,
    RemoteResult,
    RequestOptions,
    RunResult,
)

__all__ = ["SyncEngine", "EntitySpec", "ENTITY_SPECS"]

logger = logging.getLogger(__name__)

# Failed page attempts tolerated per entity, as a multiple of page_attempts.
FAILED_ATTEMPTS_FACTOR = 5


@dataclass(frozen=True)
class EntitySpec:
    """How one entity is fetched from the API."""

    name: str
    method: str
    updated_field: str
    order_field: str


ENTITY_SPECS = {
    "projects": EntitySpec("projects", "project.get", "project.updatedon", "project.updatedon"),
    "employees": EntitySpec("employees", "employee.get", "employee.updatedon", "employee.updatedon"),
    "hours": EntitySpec("hours", "hour.get", "hour.updatedon", "hour.updatedon"),
    "invoices": EntitySpec("invoices", "invoice.get", "invoice.updatedon", "invoice.date"),
    "absences": EntitySpec(
        "absences", "absencerequest.get", "absencerequest.updatedon", "absencerequest.updatedon"
    ),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _PageCursor:
    """Bookkeeping for one entity's pagination."""

    def __init__(self, failure_limit: int):
        self.failure_limit = failure_limit
        self.failed_attempts = 0
        self.last_error: Optional[RemoteError] = None

    @property
    def exhausted(self) -> bool:
        return self.failed_attempts > self.failure_limit


class SyncEngine:
    """Core sync engine that pulls Gripp entities into the mirror.

    Entities run sequentially in dependency order inside one transaction per
    run. Pages that keep failing are skipped and counted; anything that fails
    a whole entity rolls the run back.
    """

    def __init__(
        self,
        client: RemoteClientProtocol,
        uow: UnitOfWorkProtocol,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.uow = uow
        self.settings = settings or SyncSettings()
        self._clock = clock
        self._sleep = sleep
        self._stop = threading.Event()
        self._running = threading.Event()

        self._routines: dict[str, Callable[[dict, str, EntitySyncResult], None]] = {
            "projects": self._store_project,
            "employees": self._store_employee,
            "hours": self._store_hour,
            "invoices": self._store_invoice,
            "absences": self._store_absence,
        }

    @property
    def is_running(self) -> bool:
        return self._running.is_set()

    def request_stop(self) -> None:
        """Start no further entity routines in the current run."""
        if self._running.is_set():
            logger.info("Stop requested, finishing current entity")
        self._stop.set()

    # -- public routines -----------------------------------------------------

    def sync_projects(self, incremental: bool = True) -> EntitySyncResult:
        return self.sync_entity("projects", incremental)

    def sync_employees(self, incremental: bool = True) -> EntitySyncResult:
        return self.sync_entity("employees", incremental)

    def sync_hours(self, incremental: bool = True) -> EntitySyncResult:
        return self.sync_entity("hours", incremental)

    def sync_invoices(self, incremental: bool = True) -> EntitySyncResult:
        return self.sync_entity("invoices", incremental)

    def sync_absences(self, incremental: bool = True) -> EntitySyncResult:
        return self.sync_entity("absences", incremental)

    def sync_entity(self, entity: str, incremental: bool = True) -> EntitySyncResult:
        """Sync a single entity.

        Joins the open transaction when called inside a run, otherwise the
        entity gets a transaction of its own. A failure is recorded in the
        entity's status and re-raised.
        """
        if entity not in ENTITY_SPECS:
            raise ValueError(f"Unknown entity: {entity}")

        result = EntitySyncResult(entity=entity)
        joined = self.uow.in_transaction
        try:
            self.uow.with_transaction(
                lambda: self._sync_entity(result, incremental, self._clock())
            )
        except Exception as e:
            if not joined:
                self._record_failure([result], e)
            raise
        return result

    def sync_all(
        self,
        incremental: bool = True,
        entities: Optional[Iterable[str]] = None,
        only_due: bool = False,
    ) -> RunResult:
        """Sync entities in dependency order within one transaction.

        Args:
            incremental: Use each entity's watermark when it has one
            entities: Subset of entity names (default: all)
            only_due: Skip entities whose sync interval has not elapsed

        Returns:
            RunResult with one EntitySyncResult per entity considered
        """
        names = self._resolve_entities(entities)
        run = RunResult(started_at=self._clock())
        self._stop.clear()
        self._running.set()
        logger.info(
            f"Starting {'incremental' if incremental else 'full'} sync of {', '.join(names)}"
        )

        try:
            self.uow.begin_transaction()
            try:
                for name in names:
                    if self._stop.is_set():
                        run.stopped = True
                        logger.info(f"Run stopped before {name}")
                        break
                    if only_due and not self.uow.sync_status.is_due(name, run.started_at):
                        logger.debug(f"Skipping {name}, not due yet")
                        run.entities.append(EntitySyncResult(entity=name, status="skipped"))
                        continue

                    result = EntitySyncResult(entity=name)
                    run.entities.append(result)
                    self._sync_entity(result, incremental, run.started_at)

                self.uow.commit_transaction()
            except Exception as e:
                logger.error(f"Sync run failed: {e}")
                self.uow.rollback_transaction()
                run.error = self._error_dict(e)
                self._record_failure(run.entities, e)
        except MirrorError as e:
            # Transaction could not be opened or rolled back
            logger.error(f"Sync run aborted: {e}")
            run.error = e.to_dict()
        finally:
            self._running.clear()

        run.finished_at = self._clock()
        if run.error is None:
            logger.info(
                f"Sync run finished: {run.rows_synced} rows in "
                f"{(run.finished_at - run.started_at).total_seconds():.1f}s"
            )
        return run

    # -- entity routine --------------------------------------------------------

    def _resolve_entities(self, entities: Optional[Iterable[str]]) -> list[str]:
        if entities is None:
            return list(ENTITY_ORDER)
        wanted = set(entities)
        unknown = wanted - set(ENTITY_ORDER)
        if unknown:
            raise ValueError(f"Unknown entities: {', '.join(sorted(unknown))}")
        return [name for name in ENTITY_ORDER if name in wanted]

    def _sync_entity(self, result: EntitySyncResult, incremental: bool, sync_time: datetime) -> None:
        entity = result.entity
        spec = ENTITY_SPECS[entity]
        store_row = self._routines[entity]

        result.started_at = self._clock()
        result.status = "in_progress"

        status = self.uow.sync_status.get(entity)
        full_refresh = entity in self.settings.full_refresh_entities
        since = None
        if incremental and not full_refresh and status is not None:
            since = status.last_sync_time
        result.mode = "incremental" if since else "full"

        filters: tuple[Filter, ...] = ()
        if since is not None:
            filters = (Filter(spec.updated_field, GREATEREQUALS, since.isoformat()),)

        self.uow.sync_status.mark_in_progress(entity)
        logger.info(f"Syncing {entity} ({result.mode})")

        synced_at = sync_time.isoformat()
        for rows in self._paginate(spec, filters, result):
            for row in rows:
                try:
                    store_row(row, synced_at, result)
                except ValidationError as e:
                    result.rows_skipped += 1
                    logger.warning(f"Skipping {entity} row: {e} {e.details}")
                else:
                    result.rows_synced += 1

        self.uow.sync_status.mark_success(
            entity,
            sync_time,
            incremental=result.mode == "incremental",
            count=result.rows_synced,
            partial_failures=result.partial_failures,
        )
        result.status = "success"
        result.finished_at = self._clock()

        if result.partial_failures:
            logger.warning(
                f"Synced {result.rows_synced} {entity} with {result.pages_skipped} "
                f"skipped pages and {result.rows_skipped} skipped rows"
            )
        else:
            logger.info(f"Synced {result.rows_synced} {entity}")

    def _paginate(
        self, spec: EntitySpec, filters: Sequence[Filter], result: EntitySyncResult
    ) -> Iterator[list[dict]]:
        """Yield the rows of each page until the collection is exhausted."""
        page_size = self.settings.page_size
        cursor = _PageCursor(self.settings.page_attempts * FAILED_ATTEMPTS_FACTOR)
        page = 0
        rows_seen = False

        while True:
            if page >= self.settings.max_pages:
                logger.warning(
                    f"Reached page cap ({self.settings.max_pages}) for {spec.name}, stopping"
                )
                break

            offset = page * page_size
            remote = self._fetch_page(spec, filters, offset, page_size, cursor, result)
            page += 1

            if remote is None:
                if cursor.exhausted:
                    logger.warning(
                        f"Too many failed attempts ({cursor.failed_attempts}) for "
                        f"{spec.name}, stopping pagination"
                    )
                    break
                continue

            result.pages_fetched += 1
            rows = remote.rows
            if not rows:
                break

            rows_seen = True
            yield rows

            if len(rows) < page_size or remote.more_items is False:
                break

        if not rows_seen and cursor.last_error is not None:
            # Only failed or empty pages: the failed ones may have held rows
            raise cursor.last_error

    def _fetch_page(
        self,
        spec: EntitySpec,
        filters: Sequence[Filter],
        offset: int,
        page_size: int,
        cursor: _PageCursor,
        result: EntitySyncResult,
    ) -> Optional[RemoteResult]:
        """Fetch one page with retries. None means the page was skipped."""
        options = RequestOptions(
            paging=Paging(firstresult=offset, maxresults=page_size),
            orderings=(Ordering(spec.order_field, "desc"),),
        )
        attempts = self.settings.page_attempts

        for attempt in range(1, attempts + 1):
            try:
                return self.client.execute(spec.method, filters, options)
            except RemoteAuthError:
                raise
            except RemoteError as e:
                cursor.failed_attempts += 1
                cursor.last_error = e
                logger.warning(
                    f"Fetching {spec.name} at offset {offset} failed "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                if cursor.exhausted:
                    break
                if attempt < attempts:
                    self._sleep(calculate_delay(attempt - 1, self.settings.page_retry_base_delay))

        result.pages_skipped += 1
        logger.error(f"Skipping {spec.name} page at offset {offset}")
        return None

    # -- row storage -----------------------------------------------------------

    def _store_project(self, row: dict, synced_at: str, result: EntitySyncResult) -> None:
        self.uow.projects.upsert(map_project(row), synced_at)

    def _store_employee(self, row: dict, synced_at: str, result: EntitySyncResult) -> None:
        self.uow.employees.upsert(map_employee(row), synced_at)

    def _store_hour(self, row: dict, synced_at: str, result: EntitySyncResult) -> None:
        self.uow.hours.upsert(map_hour(row), synced_at)

    def _store_invoice(self, row: dict, synced_at: str, result: EntitySyncResult) -> None:
        invoice = map_invoice(row, self._clock().date())
        payload = row.get("invoicelines")
        if payload is None:
            payload = self._fetch_invoice_lines(invoice["remote_id"], result)

        local_id, _ = self.uow.invoices.upsert(invoice, synced_at)
        if payload is not None:
            lines = self._map_children(payload, map_invoice_line, result)
            self.uow.invoice_lines.replace_for_parent(local_id, lines, synced_at)

    def _store_absence(self, row: dict, synced_at: str, result: EntitySyncResult) -> None:
        request = map_absence_request(row)
        local_id, _ = self.uow.absence_requests.upsert(request, synced_at)

        payload = row.get("absencerequestline")
        if isinstance(payload, list):
            lines = self._map_children(payload, map_absence_line, result)
            self.uow.absence_request_lines.replace_for_parent(local_id, lines, synced_at)

    def _map_children(
        self, payload: list, mapper: Callable[[dict], dict], result: EntitySyncResult
    ) -> list[dict]:
        children = []
        for child in payload or []:
            try:
                children.append(mapper(child))
            except ValidationError as e:
                result.rows_skipped += 1
                logger.warning(f"Skipping child row of {result.entity}: {e}")
        return children

    def _fetch_invoice_lines(self, invoice_id: int, result: EntitySyncResult) -> Optional[list]:
        """All lines of one invoice, or None when any page could not be fetched."""
        page_size = self.settings.page_size
        filters = (Filter("invoiceline.invoice", EQUALS, invoice_id),)
        lines: list = []

        try:
            for page in range(self.settings.max_pages):
                remote = self.client.execute(
                    "invoiceline.get",
                    filters,
                    RequestOptions(
                        paging=Paging(firstresult=page * page_size, maxresults=page_size)
                    ),
                )
                lines.extend(remote.rows)
                if len(remote.rows) < page_size or remote.more_items is False:
                    return lines
        except RemoteAuthError:
            raise
        except RemoteError as e:
            result.rows_skipped += 1
            logger.warning(f"Could not fetch lines of invoice {invoice_id}, keeping old lines: {e}")
            return None

        logger.warning(
            f"Lines of invoice {invoice_id} reached the page cap "
            f"({self.settings.max_pages}), storing the first {len(lines)}"
        )
        return lines

    # -- failure bookkeeping -----------------------------------------------------

    @staticmethod
    def _error_dict(error: Exception) -> dict:
        if isinstance(error, MirrorError):
            return error.to_dict()
        return {"kind": "internal", "message": str(error), "details": {"type": type(error).__name__}}

    def _record_failure(self, results: list[EntitySyncResult], error: Exception) -> None:
        """Mark the failed entity as error after its transaction rolled back.

        Entities that had finished in the same run lost their writes with the
        rollback. When no entity was mid-flight (a failed commit) all of them
        are marked failed.
        """
        message = str(error) or type(error).__name__
        failed = [r for r in results if r.status == "in_progress"]
        if not failed:
            failed = [r for r in results if r.status == "success"]

        for result in results:
            if result in failed:
                result.status = "error"
                result.error = self._error_dict(error)
                result.finished_at = self._clock()
            elif result.status == "success":
                result.status = "rolled_back"

        def write() -> None:
            for result in failed:
                self.uow.sync_status.mark_error(result.entity, message)

        self.uow.with_transaction(write)
