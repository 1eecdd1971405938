"""Convergence controller: one reconciliation pass per resource instance.

A pass moves one instance toward its desired state:
1. Deletion requested: wait until no dependent is left, delete, confirm absence
2. Otherwise: gate on dependencies, create or update, record the remote id
3. Classify any failure and decide between Failed and a bounded requeue
4. Commit the resulting status delta exactly once

The controller holds no locks and no per-instance state between passes.
Serialization of passes for the same instance is the orchestrator's job.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .dependency import DependencyResolver
from .errors import (
    UNOWNED_NAME_KINDS,
    ClassifiedError,
    ErrorClassifier,
    ErrorKind,
    NameUnavailableError,
    PassCancelledError,
    RemoteIdentityChangedError,
    RetryPolicy,
    SubscriptionMismatchError,
)
from .managers.base import RemoteState, ResourceManager
from .managers.registry import ManagerRegistry
from .models import (
    ProvisioningState,
    ResourceAddress,
    ResourceInstance,
    ResourceStatus,
    StatusDelta,
)
from .operations import CancellationToken
from .store import StatusCallback

logger = logging.getLogger(__name__)


class OutcomeResult(str, Enum):
    """Result of a reconciliation pass."""

    READY = "Ready"
    REQUEUE = "Requeue"
    FAILED = "Failed"
    DELETED = "Deleted"


@dataclass
class ReconcileOutcome:
    """Outcome of a single reconciliation pass."""

    key: str
    result: OutcomeResult
    status: ResourceStatus
    requeue_after: float | None = None
    error: ClassifiedError | None = None
    transitions: list[ProvisioningState] = field(default_factory=list)
    committed: bool = True
    remote_calls: bool = True
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.result in (OutcomeResult.READY, OutcomeResult.DELETED)


class _Pass:
    """Working status of one pass, recording state transitions."""

    def __init__(self, instance: ResourceInstance) -> None:
        self.instance = instance
        self.status = instance.status.model_copy()
        self.transitions: list[ProvisioningState] = []
        self.remote_calls = False

    def transition(self, state: ProvisioningState) -> None:
        if self.status.state != state:
            self.transitions.append(state)
            self.status.state = state

    def record_error(self, error: ClassifiedError) -> None:
        self.status.last_error_kind = error.kind.value
        self.status.last_error_message = error.message

    def clear_errors(self) -> None:
        self.status.last_error_kind = None
        self.status.last_error_message = None
        self.status.retry_count = 0
        self.status.retrying_since = None
        self.status.failed_spec_hash = None


class ConvergenceController:
    """Reconciles resource instances against their remote resources.

    Dependencies are injected explicitly: the manager registry, the
    dependency resolver reading the instance cache, and the status callback
    that persists the delta of each committed pass.
    """

    def __init__(
        self,
        registry: ManagerRegistry,
        resolver: DependencyResolver,
        commit_status: StatusCallback,
        *,
        subscription_id: str,
        classifier: ErrorClassifier | None = None,
        policy: RetryPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the controller.

        Args:
            registry: Managers by resource kind.
            resolver: Dependency resolver over the instance cache.
            commit_status: Called once per committed pass with the status delta.
            subscription_id: The managed subscription. Instances naming another
                one fail without any remote call.
            classifier: Error classifier (default classification table if None).
            policy: Retry policy (defaults if None).
            clock: Wall clock for status timestamps and retry deadlines.
        """
        self._registry = registry
        self._resolver = resolver
        self._commit_status = commit_status
        self._subscription_id = subscription_id
        self._classifier = classifier or ErrorClassifier()
        self._policy = policy or RetryPolicy()
        self._clock = clock or (lambda: datetime.now(UTC))

    async def reconcile(
        self,
        instance: ResourceInstance,
        *,
        token: CancellationToken | None = None,
    ) -> ReconcileOutcome:
        """Run one reconciliation pass.

        Args:
            instance: Instance with its desired state and last committed status.
            token: Cancellation token of the pass.

        Returns:
            The pass outcome. A cancelled pass commits nothing and is requeued.
        """
        started = time.monotonic()
        work = _Pass(instance)

        try:
            if work.status.state == ProvisioningState.FAILED and (
                work.status.failed_spec_hash == instance.spec_hash
            ):
                outcome = self._halted(work)
            elif instance.deletion_requested:
                outcome = await self._delete(work, token)
            else:
                outcome = await self._apply(work, token)
        except PassCancelledError as e:
            error = self._classifier.classify(e)
            outcome = ReconcileOutcome(
                key=instance.key,
                result=OutcomeResult.REQUEUE,
                status=instance.status,
                requeue_after=self._policy.requeue_after(error),
                error=error,
                transitions=work.transitions,
                committed=False,
                remote_calls=work.remote_calls,
            )
            outcome.duration_seconds = time.monotonic() - started
            self._log_outcome(instance, outcome)
            return outcome

        work.status.last_reconciled = self._clock()
        delta = StatusDelta.between(instance.status, work.status)
        committed = self._commit_status(instance.key, delta)
        outcome.status = committed if isinstance(committed, ResourceStatus) else work.status
        outcome.duration_seconds = time.monotonic() - started
        self._log_outcome(instance, outcome)
        return outcome

    # -------------------------------------------------------------------------
    # Create / update
    # -------------------------------------------------------------------------

    async def _apply(self, work: _Pass, token: CancellationToken | None) -> ReconcileOutcome:
        instance = work.instance
        resolution = self._resolver.resolve(instance)
        if not resolution.ready:
            work.status.message = resolution.summary()
            return self._outcome(
                work,
                OutcomeResult.REQUEUE,
                requeue_after=self._policy.dependency_wait(),
            )

        if work.status.state != ProvisioningState.READY:
            work.transition(ProvisioningState.CREATING)

        recorded_id = work.status.remote_id
        try:
            address = self._address(instance)
            manager = self._registry.get(instance.kind)
            attributes = instance.owned_attributes()
            work.remote_calls = True
            try:
                remote: RemoteState = await manager.create_or_update(
                    address,
                    attributes,
                    force_update=bool(recorded_id),
                    dependencies=resolution.resolved,
                    token=token,
                )
            except NameUnavailableError as e:
                if recorded_id or e.reason != ErrorKind.ALREADY_EXISTS.value:
                    raise
                if not await self._created_by_earlier_pass(manager, instance, address, token):
                    raise
                logger.info(
                    "Adopting resource created by an earlier pass",
                    extra={"instance": instance.key, "resource": str(address)},
                )
                remote = await manager.create_or_update(
                    address,
                    attributes,
                    force_update=True,
                    dependencies=resolution.resolved,
                    token=token,
                )
            if recorded_id and remote.resource_id and (
                remote.resource_id.lower() != recorded_id.lower()
            ):
                raise RemoteIdentityChangedError(recorded_id, remote.resource_id)
        except PassCancelledError:
            raise
        except Exception as e:
            return self._handle_failure(work, e)

        if not recorded_id:
            work.status.remote_id = remote.resource_id or None
        work.transition(ProvisioningState.READY)
        work.clear_errors()
        work.status.observed_spec_hash = instance.spec_hash
        work.status.message = (
            f"provisioning state {remote.provisioning_state}"
            if remote.provisioning_state
            else "provisioned"
        )
        return self._outcome(work, OutcomeResult.READY)

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def _delete(self, work: _Pass, token: CancellationToken | None) -> ReconcileOutcome:
        instance = work.instance
        if work.status.state == ProvisioningState.DELETED:
            return self._outcome(work, OutcomeResult.DELETED)

        blockers = self._resolver.blocking_dependents(instance)
        if blockers:
            error = ClassifiedError(
                kind=ErrorKind.CONFLICT,
                message="deletion blocked by dependents: "
                + ", ".join(dependent.key for dependent in blockers),
                retryable=True,
                backoff_seconds=self._classifier.backoff_for(ErrorKind.CONFLICT),
            )
            work.record_error(error)
            work.status.message = error.message
            return self._outcome(
                work,
                OutcomeResult.REQUEUE,
                requeue_after=self._policy.requeue_after(error),
                error=error,
            )

        if not work.status.remote_id and work.status.last_error_kind in UNOWNED_NAME_KINDS:
            # Never created: the name belongs to someone else or was invalid
            work.transition(ProvisioningState.DELETING)
            work.transition(ProvisioningState.DELETED)
            work.clear_errors()
            work.status.message = "never created, nothing to delete"
            return self._outcome(work, OutcomeResult.DELETED)

        work.transition(ProvisioningState.DELETING)
        try:
            address = self._address(instance)
            manager = self._registry.get(instance.kind)
            work.remote_calls = True
            ack = await manager.delete(address, token=token)
            still_present = await self._still_present(manager, address, token)
        except PassCancelledError:
            raise
        except Exception as e:
            return self._handle_failure(work, e)

        if still_present:
            error = ClassifiedError(
                kind=ErrorKind.TRANSIENT,
                message="resource still present after delete",
                retryable=True,
                backoff_seconds=self._classifier.backoff_for(ErrorKind.TRANSIENT),
            )
            work.record_error(error)
            work.status.message = error.message
            return self._outcome(
                work,
                OutcomeResult.REQUEUE,
                requeue_after=self._policy.requeue_after(error),
                error=error,
            )

        work.transition(ProvisioningState.DELETED)
        work.clear_errors()
        work.status.message = "already absent" if ack.already_absent else "deleted"
        return self._outcome(work, OutcomeResult.DELETED)

    def _address(self, instance: ResourceInstance) -> ResourceAddress:
        """Remote address of ``instance`` in the managed subscription.

        Raises:
            SubscriptionMismatchError: If the instance names another subscription.
        """
        if instance.declares_other_subscription(self._subscription_id):
            raise SubscriptionMismatchError(
                instance.key, instance.subscription_id or "", self._subscription_id
            )
        return instance.address(self._subscription_id)

    async def _created_by_earlier_pass(
        self,
        manager: ResourceManager,
        instance: ResourceInstance,
        address: ResourceAddress,
        token: CancellationToken | None,
    ) -> bool:
        """Whether a taken name belongs to a resource this instance created.

        A create whose pass timed out or was cancelled may still complete
        remotely without its id ever being recorded. Such a resource sits at
        the instance's own address and carries its ownership tag.
        """
        try:
            remote = await manager.get(address, token=token)
        except PassCancelledError:
            raise
        except Exception as e:
            if self._classifier.classify(e).kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return instance.owns(remote.properties.get("tags"))

    async def _still_present(
        self, manager: ResourceManager, address: ResourceAddress, token: CancellationToken | None
    ) -> bool:
        """Confirm a delete: only a NotFound answer proves absence."""
        try:
            await manager.get(address, token=token)
        except PassCancelledError:
            raise
        except Exception as e:
            if self._classifier.classify(e).kind == ErrorKind.NOT_FOUND:
                return False
            raise
        return True

    # -------------------------------------------------------------------------
    # Failure handling
    # -------------------------------------------------------------------------

    def _handle_failure(self, work: _Pass, exc: Exception) -> ReconcileOutcome:
        error = self._classifier.classify(exc)
        work.record_error(error)
        work.status.message = error.message

        if error.kind == ErrorKind.NOT_FOUND:
            # A parent or prerequisite is missing remotely
            work.status.message = f"precondition not met: {error.message}"
            return self._outcome(
                work,
                OutcomeResult.REQUEUE,
                requeue_after=self._policy.requeue_after(error),
                error=error,
            )

        if error.counted:
            now = self._clock()
            attempt = work.status.retry_count + 1
            since = work.status.retrying_since or now
            if not self._policy.exhausted(attempt, since, now):
                work.status.retry_count = attempt
                work.status.retrying_since = since
                return self._outcome(
                    work,
                    OutcomeResult.REQUEUE,
                    requeue_after=self._policy.requeue_after(error, attempt),
                    error=error,
                )
            error = ClassifiedError(
                kind=ErrorKind.FATAL,
                message=f"retries exhausted after {work.status.retry_count} attempts: "
                f"{error.message}",
                status_code=error.status_code,
            )
            work.record_error(error)
            work.status.message = error.message

        if error.retryable:
            return self._outcome(
                work,
                OutcomeResult.REQUEUE,
                requeue_after=self._policy.requeue_after(error),
                error=error,
            )

        work.transition(ProvisioningState.FAILED)
        work.status.failed_spec_hash = work.instance.spec_hash
        return self._outcome(work, OutcomeResult.FAILED, error=error)

    def _halted(self, work: _Pass) -> ReconcileOutcome:
        """Failed with an unchanged spec: no remote call until the spec changes."""
        return self._outcome(work, OutcomeResult.FAILED)

    def _outcome(
        self,
        work: _Pass,
        result: OutcomeResult,
        *,
        requeue_after: float | None = None,
        error: ClassifiedError | None = None,
    ) -> ReconcileOutcome:
        return ReconcileOutcome(
            key=work.instance.key,
            result=result,
            status=work.status,
            requeue_after=requeue_after,
            error=error,
            transitions=work.transitions,
            remote_calls=work.remote_calls,
        )

    def _log_outcome(self, instance: ResourceInstance, outcome: ReconcileOutcome) -> None:
        """Log the pass outcome with structured data."""
        extra: dict[str, Any] = {
            "instance": instance.key,
            "kind": instance.kind.value,
            "result": outcome.result.value,
            "state": outcome.status.state.value,
            "transitions": [state.value for state in outcome.transitions],
            "committed": outcome.committed,
            "duration_seconds": round(outcome.duration_seconds, 3),
        }
        if outcome.requeue_after is not None:
            extra["requeue_after_seconds"] = round(outcome.requeue_after, 3)
        if outcome.error is not None:
            extra["error_kind"] = outcome.error.kind.value
            extra["error"] = outcome.error.message

        if outcome.result == OutcomeResult.FAILED:
            logger.error("Reconciliation failed", extra=extra)
        elif outcome.error is not None:
            logger.warning("Reconciliation requeued", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
