"""Gripp API client - performs one JSON-RPC style call per request."""

import itertools
import logging
import time
from typing import Optional, Sequence

import requests

from ..config import DEFAULT_API_URL
from .errors import (
    RateLimitError,
    RemoteApplicationError,
    RemoteAuthError,
    ServerError,
    TransportError,
)
from .request_queue import RequestQueue
from .retry import RetryConfig, RetryExhausted, retry_with_backoff
from .types import CallDescriptor, Filter, Paging, RemoteResult, RequestOptions

__all__ = ["GrippClient"]

logger = logging.getLogger(__name__)


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header, None when absent or not numeric."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class GrippClient:
    """Client for the Gripp API.

    Handles:
    - Building the wire request and the bearer header
    - Throttling through a shared RequestQueue
    - Retry with exponential backoff on transport and 5xx failures
    - Classifying every failure into the RemoteError taxonomy
    """

    DEFAULT_RETRY_CONFIG = RetryConfig(
        max_retries=3,
        base_delay=1.0,
        max_delay=30.0,
        exponential_base=2.0,
    )

    USER_AGENT = "Gripp-Mirror/1.0.0"

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        token: Optional[str] = None,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        queue: Optional[RequestQueue] = None,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        """Initialize Gripp client.

        Args:
            api_url: Full URL of the API endpoint
            token: Static API token sent as bearer credential
            timeout: Request timeout in seconds
            retry_config: Backoff for transport and server errors
            queue: Shared request queue (one is created when omitted)
            session: Optional requests session (for dependency injection/testing)
            sleep: Sleep function used between retries
        """
        self.api_url = api_url
        self.token = token
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._queue = queue or RequestQueue(max_requeues=self.retry_config.max_retries)
        self._owns_queue = queue is None
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._sleep = sleep
        self._ids = itertools.count(int(time.time() * 1000))

    @property
    def queue(self) -> RequestQueue:
        return self._queue

    def _get_headers(self) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "Content-Type": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def build_call(
        self,
        method: str,
        filters: Sequence[Filter] = (),
        options: Optional[RequestOptions] = None,
    ) -> CallDescriptor:
        """Build a call descriptor with a fresh request id."""
        return CallDescriptor(
            method=method,
            filters=tuple(filters),
            options=options or RequestOptions(),
            id=next(self._ids),
        )

    def execute(
        self,
        method: str,
        filters: Sequence[Filter] = (),
        options: Optional[RequestOptions] = None,
        retry: bool = True,
    ) -> RemoteResult:
        """Execute one remote call through the shared queue.

        Args:
            method: Remote method name, e.g. ``project.get``
            filters: Filter triples
            options: Paging and orderings
            retry: Whether to retry transport and server failures

        Returns:
            The deserialized RemoteResult

        Raises:
            RemoteAuthError: For 401/403 responses (not retried)
            RemoteApplicationError: For 4xx, error payloads and malformed bodies
            RateLimitError: When the queue gave up re-queueing a throttled call
            TransportError, ServerError: When transport retries are exhausted
        """
        call = self.build_call(method, filters, options)
        logger.debug(f"Executing {method} (id={call.id})")

        def do_call() -> RemoteResult:
            return self._queue.call(lambda: self._send(call))

        if not retry:
            return do_call()

        try:
            return retry_with_backoff(
                do_call,
                config=self.retry_config,
                retryable_exceptions=(TransportError, ServerError),
                sleep=self._sleep,
            )
        except RetryExhausted as e:
            if e.last_error is not None:
                raise e.last_error from e
            raise TransportError(f"{method} failed after retries") from e

    def _send(self, call: CallDescriptor) -> RemoteResult:
        """Perform the HTTP round trip and classify the outcome."""
        if self._session is None:
            raise TransportError("Client is closed")

        try:
            response = self._session.post(
                self.api_url,
                json=[call.to_dict()],
                headers=self._get_headers(),
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransportError(
                f"{call.method} timed out after {self.timeout}s", {"method": call.method}
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise TransportError(
                "Cannot connect to Gripp API", {"method": call.method, "url": self.api_url}
            ) from e
        except requests.exceptions.RequestException as e:
            raise TransportError(str(e), {"method": call.method}) from e

        return self._parse_response(call, response)

    def _parse_response(self, call: CallDescriptor, response: requests.Response) -> RemoteResult:
        status = response.status_code
        details = {"method": call.method, "status": status}

        if status in (429, 503):
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise RateLimitError(
                f"Rate limited ({status})", retry_after=retry_after, details=details
            )
        if status in (401, 403):
            raise RemoteAuthError("Invalid or unauthorized API token", details)
        if status >= 500:
            raise ServerError(f"Server error: {status}", details)
        if status >= 400:
            raise RemoteApplicationError(
                f"API error ({status}): {response.text[:200]}", details
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise RemoteApplicationError(
                "Response is not valid JSON", {**details, "reason": "malformed"}
            ) from e

        if not isinstance(payload, list) or not payload or not isinstance(payload[0], dict):
            raise RemoteApplicationError(
                "Unexpected response shape", {**details, "reason": "malformed"}
            )

        element = payload[0]
        if element.get("error"):
            raise RemoteApplicationError(
                str(element["error"]),
                {**details, "error_code": element.get("error_code")},
            )

        result = element.get("result")
        if not isinstance(result, (list, dict)):
            raise RemoteApplicationError(
                "Response has no result", {**details, "reason": "malformed"}
            )
        return RemoteResult.from_payload(result)

    def is_reachable(self) -> bool:
        """Check if the Gripp API answers a minimal call."""
        try:
            self.execute(
                "company.get",
                options=RequestOptions(paging=Paging(firstresult=0, maxresults=1)),
                retry=False,
            )
            return True
        except (TransportError, ServerError, RateLimitError, RemoteAuthError):
            return False
        except RemoteApplicationError:
            # Reachable, just an unexpected answer
            return True

    def close(self) -> None:
        """Close the session and queue if we own them."""
        if self._owns_queue:
            self._queue.shutdown(wait=True)
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "GrippClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
