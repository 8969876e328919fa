"""Gripp Mirror - Main entry point."""

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from . import __version__
from .config import ENTITY_ORDER, Config, setup_logging
from .store import Database, SyncStatus, UnitOfWork
from .sync import GrippClient, RequestQueue, RetryConfig, RunResult, SyncEngine

logger = logging.getLogger(__name__)


class SyncCoordinator:
    """Owns the sync scheduler and guarantees one run at a time.

    Scheduled runs only sync entities whose interval elapsed; manual
    triggers sync whatever they are asked to. A trigger that arrives while
    a run is in flight is skipped.
    """

    def __init__(self, config: Config, sync_engine: SyncEngine) -> None:
        self.config = config
        self.sync_engine = sync_engine
        self.scheduler = BackgroundScheduler()
        self.last_result: Optional[RunResult] = None
        self._run_lock = threading.Lock()

    def start(self, run_initial: bool = True) -> None:
        """Run the initial sync and start the periodic scheduler."""
        if run_initial:
            self._do_sync()

        self.scheduler.add_job(
            self._do_sync,
            trigger=IntervalTrigger(seconds=self.config.sync.interval_seconds),
            id="sync_job",
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info(f"Sync loop started (interval: {self.config.sync.interval_seconds}s)")

    def stop(self, wait: bool = True) -> None:
        """Stop scheduling runs.

        The run in flight finishes its current entity and commits. With
        ``wait`` this blocks until it has, so the store and client can be
        closed safely afterwards.
        """
        self.sync_engine.request_stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        if wait:
            # Also covers foreground runs that bypass the scheduler
            with self._run_lock:
                pass

    def trigger_sync(
        self,
        incremental: bool = True,
        entities: Optional[Sequence[str]] = None,
        job_id: str = "manual_sync",
    ) -> None:
        """Schedule a one-off sync on the scheduler's thread pool."""
        if self.scheduler.running:
            self.scheduler.add_job(
                self._do_manual_sync,
                kwargs={"incremental": incremental, "entities": entities},
                id=job_id,
                replace_existing=True,
            )

    def run_once(
        self,
        incremental: bool = True,
        entities: Optional[Sequence[str]] = None,
        only_due: bool = False,
    ) -> Optional[RunResult]:
        """Run a sync now. Returns None when another run is in flight."""
        if not self._run_lock.acquire(blocking=False):
            logger.info("Sync already running, skipping trigger")
            return None
        try:
            result = self.sync_engine.sync_all(
                incremental=incremental, entities=entities, only_due=only_due
            )
            self.last_result = result
            return result
        finally:
            self._run_lock.release()

    # -- internal ---------------------------------------------------------

    def _do_sync(self) -> None:
        """Perform a scheduled sync cycle."""
        try:
            result = self.run_once(
                incremental=self.config.sync.incremental, only_due=True
            )
            self._log_result(result)
        except Exception as e:
            logger.exception(f"Sync error: {e}")

    def _do_manual_sync(self, incremental: bool, entities: Optional[Sequence[str]]) -> None:
        try:
            self._log_result(self.run_once(incremental=incremental, entities=entities))
        except Exception as e:
            logger.exception(f"Sync error: {e}")

    @staticmethod
    def _log_result(result: Optional[RunResult]) -> None:
        if result is None:
            return
        if result.error:
            logger.warning(
                f"Sync failed ({result.error['kind']}): {result.error['message']}, "
                "retrying next cycle"
            )
        elif result.entities:
            synced = ", ".join(
                f"{r.entity}={r.rows_synced}" for r in result.entities if r.success
            )
            logger.info(f"Sync complete: {synced or 'nothing due'}")


class MirrorApp:
    """Main application orchestrator.

    Wires components together and handles lifecycle (start / shutdown).
    """

    def __init__(self, config: Config):
        """Initialize the application."""
        self.config = config

        logger.info(f"Gripp Mirror {__version__} starting...")
        logger.info(f"Using API URL: {self.config.api.url}")

        self.db = Database(self.config.get_db_path())
        self.db.initialize()
        self.uow = UnitOfWork(self.db)
        self.uow.sync_status.ensure_entities(ENTITY_ORDER, self.config.sync.interval_seconds)

        rate = self.config.rate_limit
        self.request_queue = RequestQueue(
            max_concurrent=rate.max_concurrent,
            min_interval=rate.min_interval,
            default_retry_after=rate.default_retry_after,
            max_requeues=self.config.api.max_retries,
        )
        self.client = GrippClient(
            api_url=self.config.api.url,
            token=self.config.api.token,
            timeout=self.config.api.timeout,
            retry_config=RetryConfig(
                max_retries=self.config.api.max_retries,
                base_delay=self.config.api.retry_base_delay,
                max_delay=self.config.api.retry_max_delay,
                jitter=True,
            ),
            queue=self.request_queue,
        )
        self.sync_engine = SyncEngine(self.client, self.uow, self.config.sync)
        self.coordinator = SyncCoordinator(self.config, self.sync_engine)

        self._shutdown_done = False
        self._shutdown_event = threading.Event()

    def run_sync(
        self, full: bool = False, entities: Optional[Sequence[str]] = None
    ) -> Optional[RunResult]:
        """Run one sync in the foreground."""
        return self.coordinator.run_once(incremental=not full, entities=entities)

    def serve(self) -> None:
        """Run the scheduler until a shutdown signal arrives.

        SIGUSR1 requests an immediate sync of every entity.
        """
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)
        if hasattr(signal, "SIGUSR1"):
            signal.signal(signal.SIGUSR1, self._trigger_handler)

        self.coordinator.start()
        logger.info("Gripp Mirror running")
        try:
            self._shutdown_event.wait()
        finally:
            self._shutdown()

    def status(self) -> list[SyncStatus]:
        return self.uow.sync_status.all()

    def _signal_handler(self, signum, frame) -> None:
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}")
        self.sync_engine.request_stop()
        self._shutdown_event.set()

    def _trigger_handler(self, signum, frame) -> None:
        logger.info("Manual sync requested")
        self.coordinator.trigger_sync()

    # -- Lifecycle --------------------------------------------------------

    def _shutdown(self) -> None:
        """Shutdown the application. Safe to call multiple times.

        Waits for a run in flight to finish its current entity before the
        queue, client and database are closed under it.
        """
        if self._shutdown_done:
            return
        self._shutdown_done = True
        logger.info("Shutting down...")

        self.coordinator.stop(wait=True)
        self.request_queue.shutdown(wait=True)
        self.client.close()
        self.db.close()

        logger.info("Shutdown complete")

    def __enter__(self) -> "MirrorApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


def _lock_file(handle) -> None:
    if sys.platform == "win32":
        import msvcrt
        msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)


def _unlock_file(handle) -> None:
    if sys.platform == "win32":
        import msvcrt
        msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
    else:
        import fcntl
        fcntl.flock(handle, fcntl.LOCK_UN)


class SingleInstanceLock:
    """Keeps two mirrors from writing the same database.

    The lock file holds the pid of the owning process so a refused start
    can say who holds it.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or Config.get_config_dir() / ".gripp-mirror.lock")
        self._handle = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder_pid(self) -> Optional[int]:
        """Pid written by the current holder, if it can be read."""
        try:
            text = self.path.read_text().strip()
        except OSError:
            return None
        return int(text) if text.isdigit() else None

    def acquire(self) -> bool:
        """Try to take the lock without blocking."""
        if self.held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        handle = self.path.open("a+")
        try:
            _lock_file(handle)
        except OSError:
            handle.close()
            return False

        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()}\n")
        handle.flush()
        self._handle = handle
        return True

    def release(self) -> None:
        if not self.held:
            return
        handle, self._handle = self._handle, None
        try:
            _unlock_file(handle)
        except OSError as e:
            logger.debug(f"Could not unlock {self.path}: {e}")
        handle.close()
        try:
            self.path.unlink()
        except OSError as e:
            logger.debug(f"Could not remove {self.path}: {e}")

    def __enter__(self) -> "SingleInstanceLock":
        if not self.acquire():
            raise RuntimeError(f"{self.path} is held by another process")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.release()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gripp-mirror",
        description="Mirror Gripp projects, employees, hours, invoices and absences into SQLite",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to config.json")
    parser.add_argument("--db", default=None, help="Path to the SQLite mirror")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run one sync and exit")
    sync.add_argument("--full", action="store_true", help="Ignore watermarks, fetch everything")
    sync.add_argument(
        "--entity",
        action="append",
        choices=ENTITY_ORDER,
        dest="entities",
        help="Entity to sync (repeatable, default: all)",
    )

    commands.add_parser("serve", help="Sync on a schedule until interrupted")
    commands.add_parser("status", help="Show per-entity sync status")
    return parser


def _print_run(result: RunResult) -> None:
    for entity in result.entities:
        line = f"{entity.entity:<10} {entity.status:<12} {entity.rows_synced:>6} rows"
        if entity.partial_failures:
            line += f" ({entity.pages_skipped} pages, {entity.rows_skipped} rows skipped)"
        print(line)
    if result.error:
        print(f"Sync failed: {result.error['message']}", file=sys.stderr)


def _print_status(statuses: list[SyncStatus]) -> None:
    for status in statuses:
        last = status.last_sync_time.isoformat() if status.last_sync_time else "never"
        line = f"{status.entity:<10} {status.last_sync_status:<12} {last}  {status.last_sync_count} rows"
        if status.last_sync_error:
            line += f"  error: {status.last_sync_error}"
        print(line)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = Config.load(args.config)
    if args.db:
        config.db_path = args.db
    setup_logging(args.debug or config.debug_mode)

    if args.command == "status":
        with MirrorApp(config) as app:
            _print_status(app.status())
        return 0

    if not config.api.token:
        print("No API token configured (set GRIPP_API_KEY).", file=sys.stderr)
        return 2

    lock = SingleInstanceLock()
    if not lock.acquire():
        pid = lock.holder_pid()
        holder = f" (pid {pid})" if pid else ""
        print(f"Gripp Mirror is already running{holder}.", file=sys.stderr)
        return 1

    try:
        with MirrorApp(config) as app:
            if args.command == "serve":
                app.serve()
                return 0

            result = app.run_sync(full=args.full, entities=args.entities)
            if result is None:
                return 1
            _print_run(result)
            return 0 if result.success else 1
    finally:
        lock.release()


if __name__ == "__main__":
    sys.exit(main())
