"""Storage account manager."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from azure.mgmt.storage import StorageManagementClient
from azure.mgmt.storage.models import (
    Sku,
    StorageAccountCheckNameAvailabilityParameters,
    StorageAccountCreateParameters,
)

from ..models import ResourceAddress, ResourceKind, StorageAccountAttributes
from ..operations import CancellationToken, OperationTracker, run_remote
from .base import (
    DeleteAck,
    NameAvailability,
    NameReason,
    RemoteState,
    delete_if_present,
    ensure_name_available,
    enum_value,
    issue_and_wait,
    parse_attributes,
)

logger = logging.getLogger(__name__)


class StorageAccountManager:
    """General purpose storage accounts.

    Creation is long-running; deletion is a synchronous call.
    """

    kind = ResourceKind.STORAGE_ACCOUNT

    def __init__(self, client: StorageManagementClient, tracker: OperationTracker) -> None:
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
        attrs: StorageAccountAttributes = parse_attributes(self.kind, attributes)
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = StorageAccountCreateParameters(
            sku=Sku(name=attrs.sku_name),
            kind=attrs.kind,
            location=attrs.location,
            tags=attrs.tags or None,
            access_tier=attrs.access_tier,
            enable_https_traffic_only=attrs.https_only,
            minimum_tls_version=attrs.minimum_tls_version,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.storage_accounts.begin_create,
            address.resource_group,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        account = await run_remote(
            self._client.storage_accounts.get_properties,
            address.resource_group,
            address.name,
            token=token,
        )
        return RemoteState.from_model(account)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.storage_accounts.delete,
            address.resource_group,
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        response = await run_remote(
            self._client.storage_accounts.check_name_availability,
            StorageAccountCheckNameAvailabilityParameters(name=address.name),
            token=token,
        )
        if response.name_available:
            return NameAvailability(available=True)
        reason = (
            NameReason.ALREADY_EXISTS
            if enum_value(response.reason) == "AlreadyExists"
            else NameReason.INVALID
        )
        return NameAvailability(available=False, reason=reason, message=response.message)
