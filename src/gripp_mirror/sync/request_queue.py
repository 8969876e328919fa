"""Process-wide request queue that throttles calls to the Gripp API.

Every outbound call goes through one queue instance. A single worker thread
drains the queue and only dispatches when:

- fewer than ``max_concurrent`` calls are in flight,
- at least ``min_interval`` seconds passed since the previous dispatch,
- any retry-after deadline set by a rate-limited call has expired.

A call that fails with ``RateLimitError`` goes back to the *front* of the
queue, so the order of the remaining callers is kept.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .errors import RateLimitError

__all__ = ["QueuedRequest", "RequestQueue"]

logger = logging.getLogger(__name__)

# Upper bound for a single wait of the worker, keeps shutdown responsive.
MAX_WAIT_SLICE = 0.25


@dataclass
class QueuedRequest:
    """A unit of outbound work waiting for its turn."""

    work: Callable[[], Any]
    future: Future = field(default_factory=Future)
    attempts: int = 0


class RequestQueue:
    """FIFO queue with a concurrency ceiling and minimum dispatch spacing."""

    def __init__(
        self,
        max_concurrent: int = 2,
        min_interval: float = 0.5,
        default_retry_after: float = 1.0,
        max_requeues: int = 3,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the queue.

        Args:
            max_concurrent: Maximum number of calls in flight
            min_interval: Minimum seconds between two dispatches
            default_retry_after: Wait used when a rate-limit answer has no hint
            max_requeues: How often a rate-limited call is put back before
                its RateLimitError is handed to the caller
            clock: Monotonic time source
        """
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self.min_interval = min_interval
        self.default_retry_after = default_retry_after
        self.max_requeues = max_requeues
        self._clock = clock

        self._pending: deque[QueuedRequest] = deque()
        self._cond = threading.Condition(threading.RLock())
        self._active = 0
        self._last_dispatch: Optional[float] = None
        self._not_before = 0.0
        self._closed = False
        self._worker: Optional[threading.Thread] = None
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent, thread_name_prefix="gripp-call"
        )

    def submit(self, work: Callable[[], Any]) -> Future:
        """Queue ``work`` and return a future for its result."""
        item = QueuedRequest(work=work)
        with self._cond:
            if self._closed:
                raise RuntimeError("Request queue is shut down")
            self._pending.append(item)
            self._ensure_worker()
            self._cond.notify_all()
        return item.future

    def call(self, work: Callable[[], Any], timeout: Optional[float] = None) -> Any:
        """Submit ``work`` and block until it settles."""
        return self.submit(work).result(timeout=timeout)

    def pending_count(self) -> int:
        with self._cond:
            return len(self._pending)

    def active_count(self) -> int:
        with self._cond:
            return self._active

    @property
    def is_idle(self) -> bool:
        with self._cond:
            return not self._pending and self._active == 0

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work.

        With ``wait`` the already-queued calls still run to completion,
        otherwise they are cancelled.
        """
        cancelled: list[QueuedRequest] = []
        with self._cond:
            self._closed = True
            if not wait:
                cancelled = list(self._pending)
                self._pending.clear()
            worker = self._worker
            self._cond.notify_all()

        for item in cancelled:
            item.future.cancel()
        if wait and worker is not None:
            worker.join()
        self._executor.shutdown(wait=wait)

    # -- worker -----------------------------------------------------------

    def _ensure_worker(self) -> None:
        """Start the drain thread if it is not running. Caller holds the lock."""
        if self._worker is None:
            self._worker = threading.Thread(
                target=self._drain, name="gripp-request-queue", daemon=True
            )
            self._worker.start()

    def _wait_time(self) -> float:
        """Seconds until the next dispatch is allowed. Caller holds the lock."""
        if self._active >= self.max_concurrent:
            return MAX_WAIT_SLICE
        now = self._clock()
        wait = self._not_before - now
        if self._last_dispatch is not None:
            wait = max(wait, self._last_dispatch + self.min_interval - now)
        return max(0.0, wait)

    def _drain(self) -> None:
        while True:
            with self._cond:
                if not self._pending:
                    self._worker = None
                    return

                wait = self._wait_time()
                if wait > 0:
                    self._cond.wait(timeout=min(wait, MAX_WAIT_SLICE))
                    continue

                item = self._pending.popleft()
                item.attempts += 1
                self._active += 1
                self._last_dispatch = self._clock()

            try:
                self._executor.submit(self._run, item)
            except RuntimeError as e:
                # Executor already shut down
                with self._cond:
                    self._active -= 1
                item.future.set_exception(e)

    def _run(self, item: QueuedRequest) -> None:
        try:
            result = item.work()
        except RateLimitError as e:
            self._handle_rate_limit(item, e)
        except Exception as e:
            item.future.set_exception(e)
        else:
            item.future.set_result(result)
        finally:
            with self._cond:
                self._active -= 1
                self._cond.notify_all()

    def _handle_rate_limit(self, item: QueuedRequest, error: RateLimitError) -> None:
        hint = error.retry_after if error.retry_after is not None else self.default_retry_after
        delay = max(self.min_interval, hint)

        with self._cond:
            give_up = self._closed or item.attempts > self.max_requeues
            if not give_up:
                self._not_before = max(self._not_before, self._clock() + delay)
                self._pending.appendleft(item)
                self._ensure_worker()
                self._cond.notify_all()

        if give_up:
            logger.warning(
                f"Rate limited after {item.attempts} attempts, giving up: {error}"
            )
            item.future.set_exception(error)
        else:
            logger.info(
                f"Rate limited (attempt {item.attempts}), retrying in {delay:.1f}s"
            )
