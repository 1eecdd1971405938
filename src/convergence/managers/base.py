"""Capability set shared by every resource manager.

A resource manager adapts one remote resource kind to four operations:
create_or_update, get, delete and check_name_availability. Managers are
independent classes composed with the helpers in this module; there is no
manager base class.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, TypeVar, runtime_checkable

from azure.core.exceptions import ResourceNotFoundError
from pydantic import BaseModel

from ..errors import NameUnavailableError
from ..models import ResourceAddress, ResourceKind, get_attributes_model
from ..operations import CancellationToken, OperationHandle, OperationTracker, run_remote

logger = logging.getLogger(__name__)

AttributesT = TypeVar("AttributesT", bound=BaseModel)


class NameReason(str, Enum):
    """Result of a name availability check."""

    AVAILABLE = "Available"
    ALREADY_EXISTS = "AlreadyExists"
    INVALID = "Invalid"


@dataclass(frozen=True)
class NameAvailability:
    """Whether a name can be used for a new resource."""

    available: bool
    reason: NameReason = NameReason.AVAILABLE
    message: str | None = None


@dataclass(frozen=True)
class RemoteState:
    """Remote representation of a resource as returned by the SDK."""

    resource_id: str
    name: str
    provisioning_state: str | None = None
    properties: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_model(cls, model: Any) -> RemoteState:
        """Build from an SDK model (anything exposing ``as_dict()``) or a mapping."""
        if hasattr(model, "as_dict"):
            data = model.as_dict()
        elif isinstance(model, Mapping):
            data = dict(model)
        else:
            data = dict(vars(model))
        nested = data.get("properties")
        provisioning_state = data.get("provisioning_state") or data.get("state")
        if provisioning_state is None and isinstance(nested, Mapping):
            provisioning_state = nested.get("provisioning_state")
        return cls(
            resource_id=str(data.get("id") or ""),
            name=str(data.get("name") or ""),
            provisioning_state=str(provisioning_state) if provisioning_state else None,
            properties=data,
        )


@dataclass(frozen=True)
class DeleteAck:
    """Acknowledgement of a completed delete."""

    already_absent: bool = False


@runtime_checkable
class ResourceManager(Protocol):
    """Capability set of one remote resource kind.

    Implementations must be safe to call concurrently for different
    addresses. ``delete`` is idempotent: a resource that is already absent
    is acknowledged without any mutating call.
    """

    kind: ResourceKind

    async def create_or_update(
        self,
        address: ResourceAddress,
        attributes: Mapping[str, Any],
        *,
        force_update: bool = False,
        dependencies: Mapping[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> RemoteState: ...

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState: ...

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck: ...

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability: ...


def enum_value(value: Any) -> str | None:
    """Plain string of an SDK enum member or string."""
    if value is None:
        return None
    return str(getattr(value, "value", value))


def parse_attributes(kind: ResourceKind, attributes: Mapping[str, Any]) -> Any:
    """Validate raw attributes against the kind's attribute model.

    Raises:
        pydantic.ValidationError: If the attributes are invalid.
    """
    return get_attributes_model(kind).model_validate(dict(attributes))


def check_name_pattern(name: str, pattern: re.Pattern[str], rule: str) -> NameAvailability:
    """Local name check for kinds without a remote availability API."""
    if pattern.fullmatch(name):
        return NameAvailability(available=True)
    return NameAvailability(
        available=False,
        reason=NameReason.INVALID,
        message=f"'{name}' is not a valid name: {rule}",
    )


async def ensure_name_available(
    manager: ResourceManager,
    address: ResourceAddress,
    token: CancellationToken | None,
) -> None:
    """Run the manager's name check and raise when the name is unusable.

    Raises:
        NameUnavailableError: If the name already exists or is invalid.
    """
    availability = await manager.check_name_availability(address, token=token)
    if availability.available:
        return
    logger.info(
        "Name not available",
        extra={
            "kind": manager.kind.value,
            "resource": str(address),
            "reason": availability.reason.value,
        },
    )
    raise NameUnavailableError(address.name, availability.reason.value, availability.message)


async def issue_and_wait(
    tracker: OperationTracker,
    operation: str,
    address: ResourceAddress,
    call: Callable[..., Any],
    *args: Any,
    token: CancellationToken | None = None,
) -> Any:
    """Issue one remote call and track it to completion.

    ``call`` may return an SDK poller (long-running operation) or a final
    result (synchronous operation); both are driven through the tracker.
    """
    issued = await run_remote(call, *args, token=token)
    handle = OperationHandle.wrap(operation, str(address), issued)
    return await tracker.await_completion(handle, token=token)


async def delete_if_present(
    manager: ResourceManager,
    tracker: OperationTracker,
    address: ResourceAddress,
    call: Callable[..., Any],
    *args: Any,
    token: CancellationToken | None = None,
) -> DeleteAck:
    """Idempotent delete: look the resource up first, delete only if present.

    Only a NotFound answer short-circuits. Any other lookup failure
    propagates so the caller can classify and retry it.
    """
    try:
        await manager.get(address, token=token)
    except ResourceNotFoundError:
        logger.info(
            "Resource already absent, nothing to delete",
            extra={"kind": manager.kind.value, "resource": str(address)},
        )
        return DeleteAck(already_absent=True)

    try:
        await issue_and_wait(tracker, "delete", address, call, *args, token=token)
    except ResourceNotFoundError:
        # Removed concurrently between lookup and delete
        return DeleteAck(already_absent=True)

    logger.info(
        "Resource deleted",
        extra={"kind": manager.kind.value, "resource": str(address)},
    )
    return DeleteAck()
