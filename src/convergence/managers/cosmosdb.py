"""CosmosDB account manager."""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from azure.mgmt.cosmosdb import CosmosDBManagementClient
from azure.mgmt.cosmosdb.models import (
    ConsistencyPolicy,
    DatabaseAccountCreateUpdateParameters,
    Location,
)

from ..models import CosmosDBAttributes, ResourceAddress, ResourceKind
from ..operations import CancellationToken, OperationTracker, run_remote
from .base import (
    DeleteAck,
    NameAvailability,
    NameReason,
    RemoteState,
    check_name_pattern,
    delete_if_present,
    ensure_name_available,
    issue_and_wait,
    parse_attributes,
)

logger = logging.getLogger(__name__)

ACCOUNT_NAME_PATTERN = re.compile(r"[a-z0-9][a-z0-9-]{1,42}[a-z0-9]")
ACCOUNT_NAME_RULE = "3-44 lowercase letters, digits or hyphens, starting and ending alphanumeric"


class CosmosDBManager:
    """CosmosDB database accounts, provisioned in a single write region."""

    kind = ResourceKind.COSMOS_DB

    def __init__(self, client: CosmosDBManagementClient, tracker: OperationTracker) -> None:
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
        attrs: CosmosDBAttributes = parse_attributes(self.kind, attributes)
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = DatabaseAccountCreateUpdateParameters(
            location=attrs.location,
            tags=attrs.tags or None,
            kind=attrs.kind,
            database_account_offer_type=attrs.offer_type,
            locations=[
                Location(
                    location_name=attrs.location,
                    failover_priority=0,
                    is_zone_redundant=False,
                )
            ],
            consistency_policy=ConsistencyPolicy(
                default_consistency_level=attrs.consistency_level
            ),
            enable_free_tier=attrs.enable_free_tier,
            public_network_access=attrs.public_network_access,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.database_accounts.begin_create_or_update,
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
            self._client.database_accounts.get,
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
            self._client.database_accounts.begin_delete,
            address.resource_group,
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        """Validate the name locally, then ask the service whether it is taken.

        Account names are global. ``check_name_exists`` answers True when any
        subscription already owns the name.
        """
        local = check_name_pattern(address.name, ACCOUNT_NAME_PATTERN, ACCOUNT_NAME_RULE)
        if not local.available:
            return local

        exists = await run_remote(
            self._client.database_accounts.check_name_exists, address.name, token=token
        )
        if exists:
            return NameAvailability(
                available=False,
                reason=NameReason.ALREADY_EXISTS,
                message=f"CosmosDB account name '{address.name}' is already in use",
            )
        return NameAvailability(available=True)
