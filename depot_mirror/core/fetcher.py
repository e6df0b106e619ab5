"""Rate-limited HTTP fetcher shared by every upstream caller.

One fetcher instance gates all outbound requests. Each endpoint class
(``upstream``, ``store``, ``repository``, ``manifest``) has its own policy:
a minimum spacing between dispatched requests and a bounded exponential
backoff for transient failures. The spacing is a gate, not a queue: a caller
arriving early blocks until the interval has passed, and concurrent callers
for the same class are serialized through the gate.

Transient failures (connection reset, timeout, DNS failure, HTTP 408/429/5xx)
are retried; anything else is raised immediately as FatalFetchError.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
import structlog

from depot_mirror.core.config import EndpointPolicy
from depot_mirror.core.errors import (
    FatalFetchError,
    FetchCancelledError,
    FetchExhaustedError,
)

logger = structlog.get_logger()

TRANSIENT_STATUS_CODES = frozenset({408, 429})
TRANSIENT_ERRORS = (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)


def is_transient_status(status_code: int) -> bool:
    """Check whether an HTTP status is worth retrying."""
    return status_code in TRANSIENT_STATUS_CODES or 500 <= status_code <= 599


def backoff_delay(policy: EndpointPolicy, attempt: int) -> float:
    """Delay before retry number ``attempt`` (1-based), doubling and capped."""
    return min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


@dataclass
class _Gate:
    """Dispatch gate for one endpoint class."""

    lock: threading.Lock = field(default_factory=threading.Lock)
    last_dispatch: float | None = None
    dispatched: int = 0
    retries: int = 0
    failures: int = 0
    counter_lock: threading.Lock = field(default_factory=threading.Lock)

    def count(self, counter: str) -> None:
        """Increment one of the dispatch counters."""
        with self.counter_lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def snapshot(self) -> dict[str, int]:
        """Consistent copy of the counters."""
        with self.counter_lock:
            return {"dispatched": self.dispatched, "retries": self.retries, "failures": self.failures}


class RateLimitedFetcher:
    """HTTP fetcher enforcing per-endpoint spacing and bounded retries.

    Args:
        policies: Endpoint class name to policy
        client: Optional preconfigured httpx client (tests pass a MockTransport)
        user_agent: User-Agent header for the default client
        cancel_event: Event that aborts waits when set (shutdown signal)
        clock: Monotonic time source
        sleep: Replacement for the interruptible wait, used by tests
    """

    def __init__(
        self,
        policies: dict[str, EndpointPolicy],
        client: httpx.Client | None = None,
        *,
        user_agent: str = "depot-mirror/0.1.0",
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ):
        self.policies = dict(policies)
        self.user_agent = user_agent
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._sleep = sleep
        self._client = client
        self._gates: dict[str, _Gate] = {name: _Gate() for name in self.policies}
        self._gates_lock = threading.Lock()

    @property
    def client(self) -> httpx.Client:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                follow_redirects=True,
                headers={"User-Agent": self.user_agent},
            )
        return self._client

    def policy(self, endpoint: str) -> EndpointPolicy:
        """Return the policy for an endpoint class.

        Raises:
            ValueError: If the endpoint class is not configured
        """
        try:
            return self.policies[endpoint]
        except KeyError:
            raise ValueError(f"Unknown endpoint class: {endpoint}") from None

    def _gate(self, endpoint: str) -> _Gate:
        with self._gates_lock:
            if endpoint not in self._gates:
                self._gates[endpoint] = _Gate()
            return self._gates[endpoint]

    def _pause(self, endpoint: str, seconds: float, attempts: int) -> None:
        """Wait, aborting if cancellation is signalled."""
        if seconds > 0:
            if self._sleep is not None:
                self._sleep(seconds)
                interrupted = self.cancel_event.is_set()
            else:
                interrupted = self.cancel_event.wait(seconds)
        else:
            interrupted = self.cancel_event.is_set()

        if interrupted:
            raise FetchCancelledError(
                f"Cancelled while waiting on {endpoint}",
                endpoint=endpoint,
                attempts=attempts,
            )

    def _acquire_slot(self, endpoint: str, policy: EndpointPolicy, attempts: int) -> None:
        """Block until the endpoint's minimum interval has elapsed."""
        gate = self._gate(endpoint)
        with gate.lock:
            if gate.last_dispatch is not None:
                wait = gate.last_dispatch + policy.min_interval - self._clock()
                if wait > 0:
                    logger.debug("rate_limit_wait", endpoint=endpoint, wait=round(wait, 3))
                self._pause(endpoint, wait, attempts)
            else:
                self._pause(endpoint, 0, attempts)
            gate.last_dispatch = self._clock()
            gate.count("dispatched")

    def fetch(self, endpoint: str, request: httpx.Request) -> httpx.Response:
        """Dispatch a request under an endpoint class.

        Args:
            endpoint: Endpoint class name
            request: Prepared request (re-sent as-is on retry)

        Returns:
            The first response with a status below 400

        Raises:
            FatalFetchError: Non-transient failure, not retried
            FetchExhaustedError: Transient failures outlasted the retry budget
            FetchCancelledError: Cancellation observed during a wait
        """
        policy = self.policy(endpoint)
        gate = self._gate(endpoint)
        max_attempts = policy.max_retries + 1
        last_error: BaseException | None = None
        last_status: int | None = None
        last_detail: str | None = None

        for attempt in range(1, max_attempts + 1):
            self._acquire_slot(endpoint, policy, attempt - 1)
            delay = backoff_delay(policy, attempt)

            try:
                response = self.client.send(request)
            except TRANSIENT_ERRORS as e:
                last_error = e
                last_status = None
                last_detail = None
            except httpx.HTTPError as e:
                gate.count("failures")
                logger.debug("fetch_fatal", endpoint=endpoint, url=str(request.url), error=str(e))
                raise FatalFetchError(
                    f"{request.method} {request.url} failed: {e}",
                    endpoint=endpoint,
                    cause=e,
                    attempts=attempt,
                ) from e
            else:
                if response.status_code < 400:
                    return response

                last_status = response.status_code
                last_detail = response.text[:500]
                last_error = httpx.HTTPStatusError(
                    f"HTTP {response.status_code}", request=request, response=response
                )
                if not is_transient_status(response.status_code):
                    gate.count("failures")
                    raise FatalFetchError(
                        f"{request.method} {request.url} returned {response.status_code}",
                        endpoint=endpoint,
                        cause=last_error,
                        attempts=attempt,
                        status_code=response.status_code,
                        detail=last_detail,
                    )
                retry_after = _retry_after(response)
                if retry_after is not None:
                    delay = min(max(delay, retry_after), policy.max_delay)

            if attempt < max_attempts:
                gate.count("retries")
                logger.debug(
                    "fetch_retry",
                    endpoint=endpoint,
                    url=str(request.url),
                    attempt=attempt,
                    wait=delay,
                    status=last_status,
                    error=str(last_error),
                )
                self._pause(endpoint, delay, attempt)

        gate.count("failures")
        logger.warning(
            "fetch_exhausted",
            endpoint=endpoint,
            url=str(request.url),
            attempts=max_attempts,
            status=last_status,
            error=str(last_error),
        )
        raise FetchExhaustedError(
            f"{request.method} {request.url} failed after {max_attempts} attempts",
            endpoint=endpoint,
            cause=last_error,
            attempts=max_attempts,
            status_code=last_status,
            detail=last_detail,
        )

    def request(self, endpoint: str, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Build and dispatch a request with the endpoint's timeout."""
        policy = self.policy(endpoint)
        request = self.client.build_request(method, url, timeout=policy.timeout, **kwargs)
        return self.fetch(endpoint, request)

    def get_json(self, endpoint: str, url: str, **kwargs: Any) -> Any:
        """GET a URL and decode its JSON body.

        Raises:
            FatalFetchError: If the body is not valid JSON
        """
        response = self.request(endpoint, "GET", url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise FatalFetchError(
                f"Malformed JSON from {url}",
                endpoint=endpoint,
                cause=e,
                attempts=1,
                status_code=response.status_code,
                detail=response.text[:500],
            ) from e

    def cancel(self) -> None:
        """Signal cancellation to every waiting caller."""
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been signalled."""
        return self.cancel_event.is_set()

    def stats(self) -> dict[str, dict[str, int]]:
        """Per-endpoint dispatch counters."""
        with self._gates_lock:
            gates = dict(self._gates)
        return {name: gate.snapshot() for name, gate in gates.items()}

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> RateLimitedFetcher:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
