"""Dependency ordering and readiness resolution between resource instances.

Instances declare weak references to the instances they require (a database
references its server, a replica its server and its source database). This
module:
1. Builds the dependency graph from those declarations
2. Detects cycles so that no pair of instances can wait on each other
3. Derives creation and teardown order
4. Resolves, from the cached instance store only, whether every reference
   of an instance is ready, and which instances block its deletion

EXAMPLE SPEC:
```yaml
kind: SqlDatabase
metadata:
  name: appdb
  resourceGroup: rg-app
spec:
  dependsOn:
    - role: server       # database lives on this server
      kind: SqlServer
      name: sql-app-weu
```
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import UNOWNED_NAME_KINDS
from .models import ProvisioningState, ResourceInstance, TERMINAL_STATES

logger = logging.getLogger(__name__)


class ReferenceState(str, Enum):
    """Readiness of one dependency reference."""

    READY = "ready"  # Target tracked, Ready, has a remote id, not being deleted
    PENDING = "pending"  # Target tracked but not usable yet
    MISSING = "missing"  # Target not tracked at all


class DependencyError(Exception):
    """Raised when dependency validation fails."""

    pass


class CyclicDependencyError(DependencyError):
    """Raised when a dependency cycle is detected."""

    pass


# =============================================================================
# Graph
# =============================================================================


@dataclass
class DependencyNode:
    """A node in the dependency graph."""

    key: str
    depends_on: list[str] = field(default_factory=list)
    declared: bool = True


@dataclass
class DependencyGraph:
    """Directed acyclic graph of instance dependencies, keyed by instance key."""

    nodes: dict[str, DependencyNode] = field(default_factory=dict)

    @classmethod
    def from_instances(cls, instances: Iterable[ResourceInstance]) -> DependencyGraph:
        graph = cls()
        for instance in instances:
            graph.add_node(instance.key, instance.dependency_keys())
        return graph

    def add_node(self, key: str, depends_on: list[str] | None = None) -> None:
        """Add or replace a node.

        Args:
            key: Instance key.
            depends_on: Keys of the instances this one references.
        """
        existing = self.nodes.get(key)
        if existing is None:
            self.nodes[key] = DependencyNode(key=key, depends_on=list(depends_on or []))
        else:
            existing.depends_on = list(depends_on or [])
            existing.declared = True

        # Referenced but not (yet) declared instances still take part in ordering
        for dep in depends_on or []:
            if dep not in self.nodes:
                self.nodes[dep] = DependencyNode(key=dep, declared=False)

    def undeclared(self) -> list[str]:
        """Keys that are referenced but never declared."""
        return sorted(key for key, node in self.nodes.items() if not node.declared)

    def validate(self) -> None:
        """Validate the graph for cycles.

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        # Kahn's algorithm for cycle detection
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}
        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in in_degree:
                    in_degree[dep] += 1

        queue = [node for node, degree in in_degree.items() if degree == 0]
        processed = 0

        while queue:
            current = queue.pop(0)
            processed += 1

            for dep in self.nodes[current].depends_on:
                if dep in in_degree:
                    in_degree[dep] -= 1
                    if in_degree[dep] == 0:
                        queue.append(dep)

        if processed != len(self.nodes):
            cycle_nodes = sorted(node for node, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def creation_order(self) -> list[str]:
        """Return keys in creation order (dependencies first).

        Raises:
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()

        dependents: dict[str, list[str]] = {node: [] for node in self.nodes}
        in_degree: dict[str, int] = {node: 0 for node in self.nodes}

        for node in self.nodes.values():
            for dep in node.depends_on:
                if dep in dependents:
                    dependents[dep].append(node.key)
                    in_degree[node.key] += 1

        result: list[str] = []
        queue = [node for node, degree in in_degree.items() if degree == 0]

        while queue:
            # Sort for deterministic ordering among nodes with same in_degree
            queue.sort()
            current = queue.pop(0)
            result.append(current)

            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        return result

    def teardown_order(self) -> list[str]:
        """Return keys in teardown order (dependents first)."""
        return list(reversed(self.creation_order()))


# =============================================================================
# Resolution
# =============================================================================


class InstanceLookup(Protocol):
    """Read-only view of tracked instances used by the resolver."""

    def get(self, key: str) -> ResourceInstance | None: ...

    def dependents_of(self, key: str) -> list[ResourceInstance]: ...


@dataclass(frozen=True)
class ReferenceResolution:
    """Readiness of one reference of an instance."""

    role: str
    key: str
    state: ReferenceState
    remote_id: str | None = None
    detail: str | None = None


@dataclass(frozen=True)
class DependencyResolution:
    """Readiness of every reference of an instance."""

    references: tuple[ReferenceResolution, ...] = ()

    @property
    def ready(self) -> bool:
        return all(ref.state == ReferenceState.READY for ref in self.references)

    @property
    def resolved(self) -> dict[str, str]:
        """Remote ids of ready references, by role."""
        return {
            ref.role: ref.remote_id
            for ref in self.references
            if ref.state == ReferenceState.READY and ref.remote_id
        }

    @property
    def unready(self) -> list[ReferenceResolution]:
        return [ref for ref in self.references if ref.state != ReferenceState.READY]

    def summary(self) -> str:
        waiting = ", ".join(f"{ref.key} ({ref.detail or ref.state.value})" for ref in self.unready)
        return f"waiting on dependency: {waiting}" if waiting else "dependencies ready"


class DependencyResolver:
    """Answers dependency questions from the cached instance store.

    Every lookup is a dictionary access on the store; the resolver never
    calls a remote service.
    """

    def __init__(self, lookup: InstanceLookup) -> None:
        self._lookup = lookup

    def resolve(self, instance: ResourceInstance) -> DependencyResolution:
        """Resolve every reference of ``instance``.

        A reference is ready iff its target is tracked, in state Ready, has a
        remote id and is not marked for deletion.
        """
        references: list[ReferenceResolution] = []
        for ref in instance.depends_on:
            key = instance.reference_key(ref)
            target = self._lookup.get(key)
            if target is None:
                references.append(
                    ReferenceResolution(ref.role, key, ReferenceState.MISSING, detail="not declared")
                )
                continue

            status = target.status
            if target.deletion_requested:
                state, detail = ReferenceState.PENDING, "deletion requested"
            elif status.state != ProvisioningState.READY:
                state, detail = ReferenceState.PENDING, status.state.value
            elif not status.remote_id:
                state, detail = ReferenceState.PENDING, "no remote id"
            else:
                state, detail = ReferenceState.READY, None
            references.append(
                ReferenceResolution(ref.role, key, state, remote_id=status.remote_id, detail=detail)
            )

        resolution = DependencyResolution(references=tuple(references))
        if not resolution.ready:
            logger.debug(
                "Dependencies not ready",
                extra={
                    "instance": instance.key,
                    "unready": [ref.key for ref in resolution.unready],
                },
            )
        return resolution

    def blocking_dependents(self, instance: ResourceInstance) -> list[ResourceInstance]:
        """Tracked instances that reference ``instance`` and may exist remotely.

        Deleted dependents never block. Neither do dependents that never
        obtained a remote resource: still Pending, or Failed because their
        name was taken or invalid.
        """
        return [
            dependent
            for dependent in self._lookup.dependents_of(instance.key)
            if dependent.status.state not in TERMINAL_STATES and not _never_created(dependent)
        ]


def _never_created(instance: ResourceInstance) -> bool:
    status = instance.status
    if status.remote_id:
        return False
    if status.state == ProvisioningState.PENDING:
        return True
    return (
        status.state == ProvisioningState.FAILED
        and status.last_error_kind in UNOWNED_NAME_KINDS
    )
