"""In-memory instance store of the reference orchestration runtime.

The store is the cache the dependency resolver reads from and the sink of
status commits. It keeps a reverse dependency index so that the dependents
of an instance are found without scanning every tracked instance.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from typing import Protocol

from .dependency import DependencyGraph
from .errors import RemoteIdentityChangedError
from .models import ResourceInstance, ResourceStatus, StatusDelta

logger = logging.getLogger(__name__)


class StatusCallback(Protocol):
    """Receives the status delta of every committed reconciliation pass."""

    def __call__(self, key: str, delta: StatusDelta) -> ResourceStatus | None: ...


class InstanceStore:
    """Tracked resource instances keyed by ``kind/resourceGroup/name``."""

    def __init__(self, instances: Iterable[ResourceInstance] = ()) -> None:
        self._instances: dict[str, ResourceInstance] = {}
        self._dependents: dict[str, set[str]] = defaultdict(set)
        for instance in instances:
            self.upsert(instance)

    def __len__(self) -> int:
        return len(self._instances)

    def __contains__(self, key: object) -> bool:
        return key in self._instances

    def get(self, key: str) -> ResourceInstance | None:
        return self._instances.get(key)

    def instances(self) -> list[ResourceInstance]:
        return list(self._instances.values())

    def keys(self) -> list[str]:
        return list(self._instances)

    def dependents_of(self, key: str) -> list[ResourceInstance]:
        """Tracked instances that reference ``key``."""
        return [
            self._instances[dependent]
            for dependent in sorted(self._dependents.get(key, ()))
            if dependent in self._instances
        ]

    def upsert(self, instance: ResourceInstance) -> ResourceInstance:
        """Register an instance or replace its desired state.

        The status of an already tracked instance is preserved; only the
        desired state (attributes, references, deletion request) is replaced.

        Raises:
            CyclicDependencyError: If the instance would close a dependency cycle.
        """
        others = [tracked for key, tracked in self._instances.items() if key != instance.key]
        DependencyGraph.from_instances([*others, instance]).validate()

        existing = self._instances.get(instance.key)
        if existing is not None:
            instance = instance.model_copy(update={"status": existing.status})
            self._unindex(existing)
        else:
            logger.info(
                "Tracking instance",
                extra={"instance": instance.key, "kind": instance.kind.value},
            )

        self._instances[instance.key] = instance
        for dependency in instance.dependency_keys():
            self._dependents[dependency].add(instance.key)
        return instance

    def commit_status(self, key: str, delta: StatusDelta) -> ResourceStatus:
        """Apply the status delta of one pass.

        Raises:
            KeyError: If the instance is not tracked.
            RemoteIdentityChangedError: If the delta would change a recorded remote id.
        """
        instance = self._instances[key]
        status = delta.apply(instance.status)
        recorded = instance.status.remote_id
        if recorded and status.remote_id != recorded:
            raise RemoteIdentityChangedError(recorded, status.remote_id or "")

        self._instances[key] = instance.model_copy(update={"status": status})
        return status

    def remove(self, key: str) -> ResourceInstance | None:
        """Stop tracking an instance."""
        instance = self._instances.pop(key, None)
        if instance is not None:
            self._unindex(instance)
            logger.info("Stopped tracking instance", extra={"instance": key})
        return instance

    def _unindex(self, instance: ResourceInstance) -> None:
        for dependency in instance.dependency_keys():
            dependents = self._dependents.get(dependency)
            if dependents is not None:
                dependents.discard(instance.key)
                if not dependents:
                    del self._dependents[dependency]
