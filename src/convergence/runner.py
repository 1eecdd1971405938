"""Reference orchestration runtime driving the convergence controller.

The runner owns everything the controller deliberately does not:
- A worker pool consuming a queue of instance keys
- Coalescing, so a key is queued at most once and a key that changes while
  its pass is in flight is queued again exactly once afterwards
- A per-key asyncio.Lock, so at most one pass per instance runs at a time
- Delayed requeues as requested by pass outcomes
- Periodic resync of the desired state
- Graceful shutdown that cancels in-flight passes through their tokens
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable, Iterable

from .models import ProvisioningState, ResourceInstance
from .operations import CancellationToken
from .reconciler import ConvergenceController, OutcomeResult, ReconcileOutcome
from .store import InstanceStore

logger = logging.getLogger(__name__)

DEFAULT_WORKERS = 4
DEFAULT_RESYNC_INTERVAL_SECONDS = 300.0
DEFAULT_PASS_TIMEOUT_SECONDS = 3600.0
DEFAULT_SHUTDOWN_GRACE_SECONDS = 10.0

# Requeue delay after a pass crashed outside the controller's classification
UNHANDLED_ERROR_BACKOFF_SECONDS = 60.0

DesiredStateLoader = Callable[[], Iterable[ResourceInstance]]


class ReconcileRunner:
    """Schedules reconciliation passes over the tracked instances."""

    def __init__(
        self,
        controller: ConvergenceController,
        store: InstanceStore,
        *,
        workers: int = DEFAULT_WORKERS,
        resync_interval: float = DEFAULT_RESYNC_INTERVAL_SECONDS,
        pass_timeout: float = DEFAULT_PASS_TIMEOUT_SECONDS,
        loader: DesiredStateLoader | None = None,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE_SECONDS,
    ) -> None:
        """Initialize the runner.

        Args:
            controller: Controller running the passes.
            store: Instance store the passes read from and commit to.
            workers: Number of concurrent passes.
            resync_interval: Seconds between full resyncs.
            pass_timeout: Deadline of a single pass.
            loader: Reloads the desired state on every resync when given.
            shutdown_grace: Seconds in-flight passes get to wind down on shutdown.
        """
        if workers < 1:
            raise ValueError("workers must be at least 1")
        self._controller = controller
        self._store = store
        self._workers = workers
        self._resync_interval = resync_interval
        self._pass_timeout = pass_timeout
        self._loader = loader
        self._shutdown_grace = shutdown_grace

        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._queued: set[str] = set()
        self._in_flight: set[str] = set()
        self._dirty: set[str] = set()
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._tokens: dict[str, CancellationToken] = {}
        self._shutdown_event = asyncio.Event()

    @property
    def pending(self) -> int:
        """Number of keys waiting in the queue."""
        return len(self._queued)

    def enqueue(self, key: str) -> None:
        """Queue a pass for ``key`` unless one is already queued."""
        if self._shutdown_event.is_set():
            return
        if key in self._in_flight:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    def enqueue_after(self, key: str, delay: float) -> None:
        """Queue a pass for ``key`` after ``delay`` seconds.

        An already scheduled earlier requeue wins over a later one.
        """
        if self._shutdown_event.is_set():
            return
        loop = asyncio.get_running_loop()
        due = loop.time() + max(delay, 0.0)
        existing = self._timers.get(key)
        if existing is not None:
            if existing.when() <= due:
                return
            existing.cancel()
        self._timers[key] = loop.call_later(max(delay, 0.0), self._fire_timer, key)

    def _fire_timer(self, key: str) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    def resync(self) -> None:
        """Reload the desired state (when a loader is set) and queue every instance."""
        if self._loader is not None:
            try:
                desired = list(self._loader())
            except Exception as e:
                logger.error(
                    "Desired state reload failed, keeping previous state",
                    extra={"error": str(e), "error_type": type(e).__name__},
                )
            else:
                for instance in desired:
                    try:
                        self._store.upsert(instance)
                    except Exception as e:
                        logger.error(
                            "Rejected desired state update",
                            extra={"instance": instance.key, "error": str(e)},
                        )

        for key in self._store.keys():
            self.enqueue(key)
        logger.info(
            "Resync queued instances",
            extra={"instances": len(self._store), "queued": self.pending},
        )

    async def reconcile_key(self, key: str) -> ReconcileOutcome | None:
        """Run one pass for ``key`` while holding its lock.

        Returns:
            The outcome, or None when the key is no longer tracked.
        """
        async with self._locks[key]:
            instance = self._store.get(key)
            if instance is None:
                return None
            token = CancellationToken(timeout=self._pass_timeout)
            self._tokens[key] = token
            try:
                outcome = await self._controller.reconcile(instance, token=token)
            finally:
                self._tokens.pop(key, None)

        self._after_pass(instance, outcome)
        return outcome

    def _after_pass(self, instance: ResourceInstance, outcome: ReconcileOutcome) -> None:
        key = instance.key
        if outcome.result == OutcomeResult.DELETED:
            self._store.remove(key)
            self._locks.pop(key, None)
            timer = self._timers.pop(key, None)
            if timer is not None:
                timer.cancel()
            # Dependencies waiting on this deletion can proceed now
            for dependency_key in instance.dependency_keys():
                dependency = self._store.get(dependency_key)
                if dependency is not None and dependency.deletion_requested:
                    self.enqueue(dependency_key)
            return

        if outcome.result == OutcomeResult.READY:
            for dependent in self._store.dependents_of(key):
                if dependent.status.state != ProvisioningState.READY:
                    self.enqueue(dependent.key)
            return

        if outcome.result == OutcomeResult.REQUEUE and outcome.requeue_after is not None:
            self.enqueue_after(key, outcome.requeue_after)

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            try:
                if key is None:
                    return
                self._queued.discard(key)
                if self._shutdown_event.is_set():
                    continue

                self._in_flight.add(key)
                try:
                    await self.reconcile_key(key)
                except Exception as e:
                    logger.exception(
                        "Unhandled exception during reconciliation",
                        extra={"instance": key, "worker": index, "error": str(e)},
                    )
                    self.enqueue_after(key, UNHANDLED_ERROR_BACKOFF_SECONDS)
                finally:
                    self._in_flight.discard(key)
                    if key in self._dirty:
                        self._dirty.discard(key)
                        self.enqueue(key)
            finally:
                self._queue.task_done()

    async def wait_idle(self) -> None:
        """Wait until every queued key has been processed."""
        await self._queue.join()

    async def run(self) -> None:
        """Run workers and periodic resyncs until shutdown."""
        logger.info(
            "Starting reconcile runner",
            extra={
                "workers": self._workers,
                "resync_interval_seconds": self._resync_interval,
                "pass_timeout_seconds": self._pass_timeout,
            },
        )
        workers = [asyncio.create_task(self._worker(i)) for i in range(self._workers)]
        self.resync()

        try:
            while not self._shutdown_event.is_set():
                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self._resync_interval,
                    )
                except TimeoutError:
                    self.resync()
        finally:
            await self._stop_workers(workers)

        logger.info("Reconcile runner shutdown complete")

    def shutdown(self) -> None:
        """Signal the runner to stop and cancel in-flight passes."""
        logger.info("Shutdown requested", extra={"in_flight": sorted(self._in_flight)})
        self._shutdown_event.set()
        for token in list(self._tokens.values()):
            token.cancel("cancelled by shutdown")
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

    async def _stop_workers(self, workers: list[asyncio.Task[None]]) -> None:
        if not self._shutdown_event.is_set():
            self.shutdown()
        for _ in workers:
            self._queue.put_nowait(None)
        _, still_running = await asyncio.wait(workers, timeout=self._shutdown_grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
