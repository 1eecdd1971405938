"""Error taxonomy, classification and retry policy.

Every failure raised by a resource manager, the operation tracker or the
Azure SDK is mapped to exactly one ErrorKind here. The controller never
inspects SDK exceptions itself: retryability and suggested backoff come
only from ErrorClassifier and RetryPolicy.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from pydantic import ValidationError

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

# Bounded size of messages written to status
MAX_ERROR_MESSAGE_LENGTH = 256

DEFAULT_BACKOFF_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 5
DEFAULT_MAX_BACKOFF_SECONDS = 300.0
DEFAULT_RETRY_DEADLINE_SECONDS = 3600.0
DEFAULT_DEPENDENCY_WAIT_SECONDS = 15.0
DEFAULT_JITTER_RATIO = 0.2

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({408, 502, 503, 504})


class ErrorKind(str, Enum):
    """Classification of a failed remote interaction."""

    NOT_FOUND = "NotFound"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID_NAME = "InvalidName"
    CONFLICT = "Conflict"
    THROTTLED = "Throttled"
    TRANSIENT = "Transient"
    FATAL = "Fatal"


# Kinds that halt retrying until the desired state changes
TERMINAL_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.ALREADY_EXISTS, ErrorKind.INVALID_NAME, ErrorKind.FATAL}
)

# Kinds, as recorded in status, meaning a name never belonged to this engine
UNOWNED_NAME_KINDS: frozenset[str] = frozenset(
    {ErrorKind.ALREADY_EXISTS.value, ErrorKind.INVALID_NAME.value}
)

# Kinds whose retries count toward the retry ceiling
COUNTED_KINDS: frozenset[ErrorKind] = frozenset({ErrorKind.CONFLICT, ErrorKind.THROTTLED})

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.CONFLICT, ErrorKind.THROTTLED, ErrorKind.TRANSIENT}
)

# Remote error codes, matched before the HTTP status code
ERROR_CODE_KINDS: dict[str, ErrorKind] = {
    "AlreadyExists": ErrorKind.ALREADY_EXISTS,
    "NameAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "ServerAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "StorageAccountAlreadyTaken": ErrorKind.ALREADY_EXISTS,
    "StorageAccountAlreadyExists": ErrorKind.ALREADY_EXISTS,
    "Invalid": ErrorKind.INVALID_NAME,
    "InvalidName": ErrorKind.INVALID_NAME,
    "InvalidServerName": ErrorKind.INVALID_NAME,
    "AccountNameInvalid": ErrorKind.INVALID_NAME,
    "InvalidResourceName": ErrorKind.INVALID_NAME,
    "Conflict": ErrorKind.CONFLICT,
    "AnotherOperationInProgress": ErrorKind.CONFLICT,
    "OperationInProgress": ErrorKind.CONFLICT,
    "ConflictingServerOperation": ErrorKind.CONFLICT,
    "ConflictingDatabaseOperation": ErrorKind.CONFLICT,
    "TooManyRequests": ErrorKind.THROTTLED,
    "Throttled": ErrorKind.THROTTLED,
    "SubscriptionRequestsThrottled": ErrorKind.THROTTLED,
    "ResourceNotFound": ErrorKind.NOT_FOUND,
    "ResourceGroupNotFound": ErrorKind.NOT_FOUND,
    "ParentResourceNotFound": ErrorKind.NOT_FOUND,
}

DEFAULT_BASE_BACKOFF: dict[ErrorKind, float] = {
    ErrorKind.NOT_FOUND: 15.0,
    ErrorKind.CONFLICT: 10.0,
    ErrorKind.THROTTLED: 30.0,
    ErrorKind.TRANSIENT: 5.0,
}


# =============================================================================
# Exceptions
# =============================================================================


class ConvergenceError(Exception):
    """Base class for errors raised by the convergence engine."""

    pass


class NameUnavailableError(ConvergenceError):
    """Raised when a name availability check rejects the desired name."""

    def __init__(self, name: str, reason: str, message: str | None = None) -> None:
        self.name = name
        self.reason = str(getattr(reason, "value", reason))
        self.detail = message
        super().__init__(message or f"Name '{name}' is not available: {self.reason}")


class OperationTimeoutError(ConvergenceError):
    """Raised when a long-running operation does not finish in time."""

    def __init__(self, operation: str, resource: str, timeout: float) -> None:
        self.operation = operation
        self.resource = resource
        self.timeout = timeout
        super().__init__(f"{operation} on {resource} did not complete within {timeout:.0f}s")


class PassCancelledError(ConvergenceError):
    """Raised when a reconciliation pass is cancelled or exceeds its deadline."""

    pass


class SubscriptionMismatchError(ConvergenceError):
    """Raised when an instance names a subscription the engine does not manage."""

    def __init__(self, key: str, declared: str, managed: str) -> None:
        self.key = key
        self.declared = declared
        self.managed = managed
        super().__init__(
            f"{key} declares subscription {declared}, but this operator manages {managed}"
        )


class RemoteIdentityChangedError(ConvergenceError):
    """Raised when the remote resource id differs from the recorded one."""

    def __init__(self, recorded: str, observed: str) -> None:
        self.recorded = recorded
        self.observed = observed
        super().__init__(
            f"Remote identity changed from {recorded} to {observed}; "
            "the resource was replaced outside of this engine"
        )


# =============================================================================
# Classification
# =============================================================================


@dataclass(frozen=True)
class ClassifiedError:
    """Outcome of classifying one failure.

    Only ``kind`` and ``message`` are written to instance status.
    """

    kind: ErrorKind
    message: str
    status_code: int | None = None
    retryable: bool = False
    backoff_seconds: float | None = None
    retry_after: float | None = None

    @property
    def terminal(self) -> bool:
        return self.kind in TERMINAL_KINDS

    @property
    def counted(self) -> bool:
        return self.kind in COUNTED_KINDS


class ErrorClassifier:
    """Maps exceptions to ErrorKind with a suggested backoff."""

    def __init__(self, base_backoff: Mapping[ErrorKind, float] | None = None) -> None:
        self._base_backoff = dict(DEFAULT_BASE_BACKOFF)
        if base_backoff:
            self._base_backoff.update(base_backoff)

    def classify(self, exc: BaseException) -> ClassifiedError:
        """Classify an exception.

        Args:
            exc: Failure raised by a manager, the tracker or the SDK.

        Returns:
            The classification. Unknown failures are Fatal.
        """
        status_code: int | None = None
        retry_after: float | None = None

        if isinstance(exc, NameUnavailableError):
            kind = (
                ErrorKind.ALREADY_EXISTS if exc.reason == "AlreadyExists" else ErrorKind.INVALID_NAME
            )
        elif isinstance(exc, (OperationTimeoutError, PassCancelledError)):
            kind = ErrorKind.TRANSIENT
        elif isinstance(exc, ValidationError):
            kind = ErrorKind.FATAL
        elif isinstance(exc, HttpResponseError):
            status_code = exc.status_code
            retry_after = _retry_after(exc)
            kind = self._classify_http(exc, status_code)
        elif isinstance(exc, (ServiceRequestError, ServiceResponseError)):
            kind = ErrorKind.TRANSIENT
        elif isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
            kind = ErrorKind.TRANSIENT
        else:
            kind = ErrorKind.FATAL

        classified = ClassifiedError(
            kind=kind,
            message=summarize_message(exc),
            status_code=status_code,
            retryable=kind in RETRYABLE_KINDS,
            backoff_seconds=self.backoff_for(kind),
            retry_after=retry_after if kind == ErrorKind.THROTTLED else None,
        )
        logger.debug(
            "Classified error",
            extra={
                "error_kind": classified.kind.value,
                "status_code": status_code,
                "error_type": type(exc).__name__,
            },
        )
        return classified

    def backoff_for(self, kind: ErrorKind) -> float | None:
        """Suggested base backoff for failures of ``kind``."""
        return self._base_backoff.get(kind)

    @staticmethod
    def _classify_http(exc: HttpResponseError, status_code: int | None) -> ErrorKind:
        if isinstance(exc, ResourceNotFoundError) or status_code == 404:
            return ErrorKind.NOT_FOUND

        code = _error_code(exc)
        if code and code in ERROR_CODE_KINDS:
            return ERROR_CODE_KINDS[code]

        if isinstance(exc, ResourceExistsError) or status_code == 409:
            return ErrorKind.CONFLICT
        if status_code == 429:
            return ErrorKind.THROTTLED
        if status_code in TRANSIENT_STATUS_CODES:
            return ErrorKind.TRANSIENT
        return ErrorKind.FATAL


def _error_code(exc: HttpResponseError) -> str | None:
    error = getattr(exc, "error", None)
    code = getattr(error, "code", None)
    return str(code) if code else None


def _retry_after(exc: HttpResponseError) -> float | None:
    response = getattr(exc, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    return seconds if seconds >= 0 else None


def summarize_message(exc: BaseException) -> str:
    """Summarize an exception for status: first line, bounded length.

    The remote error message is preferred over the full exception text so
    raw response payloads never reach status.
    """
    error = getattr(exc, "error", None)
    text = getattr(error, "message", None) or str(exc) or type(exc).__name__
    first_line = next((line.strip() for line in str(text).splitlines() if line.strip()), "")
    if not first_line:
        first_line = type(exc).__name__
    if len(first_line) > MAX_ERROR_MESSAGE_LENGTH:
        first_line = first_line[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return first_line


# =============================================================================
# Retry policy
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Requeue delays and the retry ceiling for counted error kinds."""

    max_retries: int = DEFAULT_MAX_RETRIES
    max_backoff_seconds: float = DEFAULT_MAX_BACKOFF_SECONDS
    retry_deadline_seconds: float = DEFAULT_RETRY_DEADLINE_SECONDS
    dependency_wait_seconds: float = DEFAULT_DEPENDENCY_WAIT_SECONDS
    jitter_ratio: float = DEFAULT_JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: Config) -> RetryPolicy:
        """Build the policy from engine configuration.

        Counted retries may run for at most one pass deadline.
        """
        return cls(
            max_retries=config.max_retries,
            max_backoff_seconds=float(config.max_backoff_seconds),
            retry_deadline_seconds=float(config.pass_timeout_seconds),
        )

    def requeue_after(self, error: ClassifiedError, attempt: int = 1) -> float:
        """Compute the delay before the next pass.

        A server-provided Retry-After is honoured as is. Otherwise the
        classifier's base backoff grows exponentially with the attempt number
        and receives up to ``jitter_ratio`` of random jitter.

        Args:
            error: Classified failure of the current pass.
            attempt: 1-based retry attempt.

        Returns:
            Delay in seconds, capped at ``max_backoff_seconds``.
        """
        if error.retry_after is not None:
            return min(error.retry_after, self.max_backoff_seconds)

        base = error.backoff_seconds or DEFAULT_BACKOFF_SECONDS
        backoff = base * (2 ** max(attempt - 1, 0))
        jitter = self.rng.uniform(0, backoff * self.jitter_ratio)
        return min(backoff + jitter, self.max_backoff_seconds)

    def dependency_wait(self) -> float:
        """Delay before re-checking unready dependencies."""
        jitter = self.rng.uniform(0, self.dependency_wait_seconds * self.jitter_ratio)
        return min(self.dependency_wait_seconds + jitter, self.max_backoff_seconds)

    def exhausted(self, attempt: int, retrying_since: datetime | None, now: datetime) -> bool:
        """Whether a counted retry has passed the attempt ceiling or deadline."""
        if attempt > self.max_retries:
            return True
        if retrying_since is None:
            return False
        return now - retrying_since > timedelta(seconds=self.retry_deadline_seconds)
