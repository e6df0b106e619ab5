"""Error taxonomy for depot-mirror.

Upstream failures, repository write collisions and missing content each get
their own exception type so callers can decide between retrying, soft-failing
a single title, or halting the subsystem:

- FetchError and subclasses: raised by the rate-limited fetcher
- UpstreamUnavailableError: catalog service unreachable or malformed
- WriteConflictError: a branch moved underneath a commit
- NotFoundError: branch or file absent (a state, not a failure)
- ConfigError: required credentials or identifiers missing at startup
"""

from __future__ import annotations


class DepotMirrorError(Exception):
    """Base class for all depot-mirror errors."""


class ConfigError(DepotMirrorError):
    """Raised when required configuration is missing or invalid."""


class FetchError(DepotMirrorError):
    """Raised when a request through the fetcher does not succeed.

    Attributes:
        endpoint: Endpoint class the request was dispatched under
        cause: Last underlying exception, if any
        attempts: Number of attempts dispatched
        status_code: HTTP status of the last response, if one was received
        detail: Response body excerpt for HTTP failures
    """

    def __init__(
        self,
        message: str,
        *,
        endpoint: str,
        cause: BaseException | None = None,
        attempts: int = 0,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        self.endpoint = endpoint
        self.cause = cause
        self.attempts = attempts
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


class FetchExhaustedError(FetchError):
    """Transient failures persisted past the retry budget."""


class FatalFetchError(FetchError):
    """Non-transient failure, returned without retrying."""


class FetchCancelledError(FetchError):
    """Cancellation was signalled while waiting to dispatch or retry."""


class UpstreamUnavailableError(DepotMirrorError):
    """The upstream catalog could not produce usable data for a title."""

    def __init__(self, title_id: str, reason: str):
        self.title_id = title_id
        self.reason = reason
        super().__init__(f"Upstream unavailable for {title_id}: {reason}")


class NotFoundError(DepotMirrorError):
    """A branch or file does not exist in the artifact repository."""

    def __init__(self, title_id: str, path: str | None = None):
        self.title_id = title_id
        self.path = path
        if path:
            super().__init__(f"{path} not found on branch {title_id}")
        else:
            super().__init__(f"Branch {title_id} not found")


class RepositoryError(DepotMirrorError):
    """The version-control host rejected or failed an operation."""


class WriteConflictError(RepositoryError):
    """The branch tip moved between reading it and advancing it.

    Attributes:
        title_id: Branch that was being written
        expected_sha: Tip revision the commit was built on
    """

    def __init__(self, title_id: str, expected_sha: str | None = None):
        self.title_id = title_id
        self.expected_sha = expected_sha
        super().__init__(f"Branch {title_id} moved since {expected_sha}")


class SyncError(DepotMirrorError):
    """Reconciliation of a single title could not complete."""

    def __init__(self, title_id: str, reason: str):
        self.title_id = title_id
        self.reason = reason
        super().__init__(f"Sync failed for {title_id}: {reason}")
