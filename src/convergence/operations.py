"""Long-running operation tracking and cancellation.

Remote mutations return either an SDK poller or an already-completed
result. Both are wrapped in an OperationHandle and driven to a terminal
state by the OperationTracker, which polls with capped exponential backoff
and observes the pass CancellationToken at every wait.

Synchronous SDK calls never run on the event loop thread: run_remote
dispatches them to the default executor, mirroring how the operator has
always offloaded blocking Azure SDK calls.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, TypeVar, runtime_checkable

from .errors import OperationTimeoutError, PassCancelledError

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_OPERATION_TIMEOUT_SECONDS = 1800.0
DEFAULT_BACKOFF_FACTOR = 1.5


class OperationState(str, Enum):
    """State of a tracked remote operation."""

    ISSUED = "Issued"
    POLLING = "Polling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


@runtime_checkable
class Poller(Protocol):
    """The subset of azure.core.polling.LROPoller the tracker relies on."""

    def done(self) -> bool: ...

    def status(self) -> str: ...

    def result(self, timeout: float | None = None) -> Any: ...


@dataclass
class OperationHandle:
    """A remote operation and its progress."""

    operation: str
    resource: str
    poller: Poller | None = None
    state: OperationState = OperationState.ISSUED
    polls: int = 0
    result: Any = None
    error: BaseException | None = None
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def completed(cls, operation: str, resource: str, result: Any) -> OperationHandle:
        """Wrap the result of a synchronous remote call."""
        return cls(
            operation=operation,
            resource=resource,
            state=OperationState.SUCCEEDED,
            result=result,
        )

    @classmethod
    def wrap(cls, operation: str, resource: str, value: Any) -> OperationHandle:
        """Wrap a poller, or a plain result of a synchronous call."""
        if isinstance(value, Poller):
            return cls(operation=operation, resource=resource, poller=value)
        return cls.completed(operation, resource, value)

    @property
    def finished(self) -> bool:
        return self.state in (OperationState.SUCCEEDED, OperationState.FAILED)


class CancellationToken:
    """Cancellation signal plus an optional deadline for one pass.

    The deadline is measured on the monotonic clock. The token counts as
    cancelled once ``cancel()`` is called or the deadline has passed.
    """

    def __init__(self, timeout: float | None = None) -> None:
        self._event = asyncio.Event()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._reason: str | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or self.expired

    def remaining(self) -> float | None:
        """Seconds until the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def raise_if_cancelled(self) -> None:
        """Raise PassCancelledError when cancelled or past the deadline."""
        if self._event.is_set():
            raise PassCancelledError(f"Reconciliation pass {self._reason}")
        if self.expired:
            raise PassCancelledError("Reconciliation pass exceeded its deadline")

    async def wait(self) -> None:
        """Block until the token is cancelled or its deadline passes."""
        remaining = self.remaining()
        if remaining is None:
            await self._event.wait()
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=remaining)
        except TimeoutError:
            pass

    async def sleep(self, seconds: float) -> None:
        """Sleep, waking early on cancellation.

        Raises:
            PassCancelledError: If the token is cancelled before or during the sleep.
        """
        self.raise_if_cancelled()
        delay = seconds
        remaining = self.remaining()
        if remaining is not None:
            delay = min(delay, remaining)
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            pass
        self.raise_if_cancelled()


async def run_remote(
    func: Callable[..., T],
    *args: Any,
    token: CancellationToken | None = None,
    **kwargs: Any,
) -> T:
    """Run a blocking SDK call in the default executor.

    When a token is given the call is raced against it. A cancelled pass
    stops waiting immediately; the executor thread finishes in the
    background and its result is discarded.

    Raises:
        PassCancelledError: If the token fires before the call returns.
    """
    if token is not None:
        token.raise_if_cancelled()

    loop = asyncio.get_running_loop()
    future = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
    if token is None:
        return await future

    waiter = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({future, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()

    if future in done:
        return future.result()

    future.add_done_callback(_discard_result)
    token.raise_if_cancelled()
    # The waiter only returns once the token fired
    raise PassCancelledError("Reconciliation pass cancelled")


def _discard_result(future: asyncio.Future[Any]) -> None:
    if not future.cancelled() and future.exception() is not None:
        logger.debug(
            "Discarded remote call failure after cancellation",
            extra={"error": str(future.exception())},
        )


class OperationTracker:
    """Drives operation handles to a terminal state by polling."""

    def __init__(
        self,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_poll_interval: float = DEFAULT_MAX_POLL_INTERVAL_SECONDS,
        timeout: float = DEFAULT_OPERATION_TIMEOUT_SECONDS,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
    ) -> None:
        """Initialize the tracker.

        Args:
            poll_interval: Initial delay between polls.
            max_poll_interval: Ceiling for the poll delay.
            timeout: Default completion timeout per operation.
            backoff_factor: Growth factor of the poll delay.
        """
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")
        if backoff_factor < 1:
            raise ValueError("backoff_factor must be at least 1")
        self._poll_interval = poll_interval
        self._max_poll_interval = max(max_poll_interval, poll_interval)
        self._timeout = timeout
        self._backoff_factor = backoff_factor

    @classmethod
    def from_config(cls, config: Config) -> OperationTracker:
        return cls(
            poll_interval=config.poll_interval_seconds,
            max_poll_interval=config.max_poll_interval_seconds,
            timeout=config.operation_timeout_seconds,
        )

    async def await_completion(
        self,
        handle: OperationHandle,
        *,
        poll_interval: float | None = None,
        timeout: float | None = None,
        token: CancellationToken | None = None,
    ) -> Any:
        """Wait until the operation reaches a terminal state.

        Args:
            handle: Operation to track.
            poll_interval: Override of the initial poll delay.
            timeout: Override of the completion timeout.
            token: Cancellation token of the current pass.

        Returns:
            The final remote representation returned by the operation.

        Raises:
            OperationTimeoutError: If the operation is still running at the timeout.
            PassCancelledError: If the pass is cancelled while waiting.
            Exception: The remote failure, re-raised unchanged.
        """
        if handle.state == OperationState.SUCCEEDED:
            return handle.result
        if handle.state == OperationState.FAILED and handle.error is not None:
            raise handle.error
        if handle.poller is None:
            raise ValueError(f"{handle.operation} on {handle.resource} has no poller")

        interval = poll_interval or self._poll_interval
        limit = timeout or self._timeout
        deadline = time.monotonic() + limit
        handle.state = OperationState.POLLING

        while True:
            if token is not None:
                token.raise_if_cancelled()

            handle.polls += 1
            if handle.poller.done():
                break

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Operation timed out",
                    extra={
                        "operation": handle.operation,
                        "resource": handle.resource,
                        "timeout_seconds": limit,
                        "polls": handle.polls,
                    },
                )
                raise OperationTimeoutError(handle.operation, handle.resource, limit)

            delay = min(interval, remaining)
            if token is not None:
                await token.sleep(delay)
            else:
                await asyncio.sleep(delay)
            interval = min(interval * self._backoff_factor, max(self._max_poll_interval, interval))

        try:
            result = await run_remote(handle.poller.result, token=token)
        except PassCancelledError:
            raise
        except Exception as e:
            handle.state = OperationState.FAILED
            handle.error = e
            logger.info(
                "Operation failed",
                extra={
                    "operation": handle.operation,
                    "resource": handle.resource,
                    "error_type": type(e).__name__,
                    "polls": handle.polls,
                },
            )
            raise

        handle.state = OperationState.SUCCEEDED
        handle.result = result
        logger.debug(
            "Operation succeeded",
            extra={
                "operation": handle.operation,
                "resource": handle.resource,
                "polls": handle.polls,
                "duration_seconds": round(time.monotonic() - handle.started_at, 3),
            },
        )
        return result
