"""Resource group manager."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import ResourceGroup

from ..models import ResourceAddress, ResourceGroupAttributes, ResourceKind
from ..operations import CancellationToken, OperationTracker, run_remote
from .base import (
    DeleteAck,
    NameAvailability,
    RemoteState,
    check_name_pattern,
    delete_if_present,
    ensure_name_available,
    issue_and_wait,
    parse_attributes,
)

logger = logging.getLogger(__name__)

RESOURCE_GROUP_NAME_PATTERN = re.compile(r"[-\w.()]{0,89}[-\w()]")
RESOURCE_GROUP_NAME_RULE = (
    "1-90 alphanumerics, underscores, hyphens, periods or parentheses, not ending in a period"
)


class ResourceGroupManager:
    """Resource groups. The instance name is the group name."""

    kind = ResourceKind.RESOURCE_GROUP

    def __init__(self, client: ResourceManagementClient, tracker: OperationTracker) -> None:
        self._client = client
        self._tracker = tracker

    async def create_or_update(
        self,
        address: ResourceAddress,
        attributes: Mapping[str, Any],
        *,
        force_update: bool = False,
        dependencies: Mapping[str, str] | None = None,
        token: CancellationToken | None = None,
    ) -> RemoteState:
        attrs: ResourceGroupAttributes = parse_attributes(self.kind, attributes)
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = ResourceGroup(location=attrs.location, tags=attrs.tags or None)
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.resource_groups.create_or_update,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        group = await run_remote(self._client.resource_groups.get, address.name, token=token)
        return RemoteState.from_model(group)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.resource_groups.begin_delete,
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, RESOURCE_GROUP_NAME_PATTERN, RESOURCE_GROUP_NAME_RULE)
