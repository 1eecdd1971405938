"""Azure SQL resource managers.

Covers logical servers, databases, server firewall rules, virtual network
rules, the Entra ID administrator of a server, and geo-secondary replicas.
Children are addressed through the ``server`` reference role; replicas
additionally take the remote id of their primary database through the
``source`` role.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.sql.models import (
    CheckNameAvailabilityRequest,
    Database,
    FirewallRule,
    Server,
    ServerAzureADAdministrator,
    ServerExternalAdministrator,
    Sku,
    VirtualNetworkRule,
)

from ..models import (
    ResourceAddress,
    ResourceKind,
    SqlAdministratorAttributes,
    SqlDatabaseAttributes,
    SqlFirewallRuleAttributes,
    SqlReplicaAttributes,
    SqlServerAttributes,
    SqlVirtualNetworkRuleAttributes,
)
from ..operations import CancellationToken, OperationTracker, run_remote
from .base import (
    DeleteAck,
    NameAvailability,
    NameReason,
    RemoteState,
    check_name_pattern,
    delete_if_present,
    ensure_name_available,
    enum_value,
    issue_and_wait,
    parse_attributes,
)

logger = logging.getLogger(__name__)

# The only administrator name the service accepts
ACTIVE_DIRECTORY_ADMINISTRATOR = "ActiveDirectory"

DATABASE_NAME_PATTERN = re.compile(r"[^<>*%&:\\/?]{0,127}[^<>*%&:\\/?. ]")
DATABASE_NAME_RULE = "1-128 characters, no <>*%&:\\/? and no trailing period or space"

FIREWALL_RULE_NAME_PATTERN = re.compile(r"[^<>*%&:;\\/?]{0,127}[^<>*%&:;\\/?. ]")
FIREWALL_RULE_NAME_RULE = "1-128 characters, no <>*%&:;\\/? and no trailing period or space"

ADMINISTRATOR_NAME_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,128}")
ADMINISTRATOR_NAME_RULE = "1-128 letters, digits, periods, underscores or hyphens"

VNET_RULE_NAME_PATTERN = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_.-]{0,126}[A-Za-z0-9_])?")
VNET_RULE_NAME_RULE = "1-128 letters, digits, underscores, periods or hyphens, no leading or trailing period"


def _sku(name: str | None, tier: str | None, capacity: int | None = None) -> Sku | None:
    if name is None:
        return None
    return Sku(name=name, tier=tier, capacity=capacity)


class SqlServerManager:
    """Logical SQL servers with Entra ID only authentication."""

    kind = ResourceKind.SQL_SERVER

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlServerAttributes = parse_attributes(self.kind, attributes)
        if not force_update:
            await ensure_name_available(self, address, token)

        admin = attrs.administrator
        parameters = Server(
            location=attrs.location,
            tags=attrs.tags or None,
            version=attrs.version,
            minimal_tls_version=attrs.minimal_tls_version,
            public_network_access=attrs.public_network_access,
            administrators=ServerExternalAdministrator(
                administrator_type=ACTIVE_DIRECTORY_ADMINISTRATOR,
                login=admin.login,
                sid=admin.sid,
                tenant_id=admin.tenant_id,
                azure_ad_only_authentication=True,
            ),
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.servers.begin_create_or_update,
            address.resource_group,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        server = await run_remote(
            self._client.servers.get, address.resource_group, address.name, token=token
        )
        return RemoteState.from_model(server)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.servers.begin_delete,
            address.resource_group,
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        response = await run_remote(
            self._client.servers.check_name_availability,
            CheckNameAvailabilityRequest(name=address.name),
            token=token,
        )
        if response.available:
            return NameAvailability(available=True)
        reason = (
            NameReason.ALREADY_EXISTS
            if enum_value(response.reason) == "AlreadyExists"
            else NameReason.INVALID
        )
        return NameAvailability(available=False, reason=reason, message=response.message)


class SqlDatabaseManager:
    """Databases on a logical server (reference role ``server``)."""

    kind = ResourceKind.SQL_DATABASE

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlDatabaseAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = Database(
            location=attrs.location,
            tags=attrs.tags or None,
            sku=_sku(attrs.sku_name, attrs.sku_tier, attrs.capacity),
            collation=attrs.collation,
            max_size_bytes=attrs.max_size_bytes,
            zone_redundant=attrs.zone_redundant,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.databases.begin_create_or_update,
            address.resource_group,
            server,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        database = await run_remote(
            self._client.databases.get,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )
        return RemoteState.from_model(database)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.databases.begin_delete,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, DATABASE_NAME_PATTERN, DATABASE_NAME_RULE)


class SqlReplicaManager:
    """Geo-secondary databases.

    The replica is created on the server referenced as ``server`` from the
    primary database referenced as ``source``. The primary's remote id is
    supplied by the controller through ``dependencies``.
    """

    kind = ResourceKind.SQL_REPLICA

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlReplicaAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        source_id = (dependencies or {}).get("source")
        if not source_id:
            raise ValueError(f"{address.name} requires the remote id of its 'source' database")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = Database(
            location=attrs.location,
            tags=attrs.tags or None,
            sku=_sku(attrs.sku_name, attrs.sku_tier),
            create_mode="Secondary",
            secondary_type="Geo",
            source_database_id=source_id,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.databases.begin_create_or_update,
            address.resource_group,
            server,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        database = await run_remote(
            self._client.databases.get,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )
        return RemoteState.from_model(database)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.databases.begin_delete,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, DATABASE_NAME_PATTERN, DATABASE_NAME_RULE)


class SqlFirewallRuleManager:
    """Server-level firewall rules. The SDK calls are synchronous."""

    kind = ResourceKind.SQL_FIREWALL_RULE

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlFirewallRuleAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = FirewallRule(
            start_ip_address=attrs.start_ip_address,
            end_ip_address=attrs.end_ip_address,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.firewall_rules.create_or_update,
            address.resource_group,
            server,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        rule = await run_remote(
            self._client.firewall_rules.get,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )
        return RemoteState.from_model(rule)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.firewall_rules.delete,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(
            address.name, FIREWALL_RULE_NAME_PATTERN, FIREWALL_RULE_NAME_RULE
        )


class SqlAdministratorManager:
    """Entra ID administrator of a server (reference role ``server``).

    A server has at most one such administrator and the service always names
    it ``ActiveDirectory``; the instance name is only a local identifier.
    """

    kind = ResourceKind.SQL_ADMINISTRATOR

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlAdministratorAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = ServerAzureADAdministrator(
            administrator_type=ACTIVE_DIRECTORY_ADMINISTRATOR,
            login=attrs.login,
            sid=attrs.sid,
            tenant_id=attrs.tenant_id,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.server_azure_ad_administrators.begin_create_or_update,
            address.resource_group,
            server,
            ACTIVE_DIRECTORY_ADMINISTRATOR,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        admin = await run_remote(
            self._client.server_azure_ad_administrators.get,
            address.resource_group,
            address.parent("server"),
            ACTIVE_DIRECTORY_ADMINISTRATOR,
            token=token,
        )
        return RemoteState.from_model(admin)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.server_azure_ad_administrators.begin_delete,
            address.resource_group,
            address.parent("server"),
            ACTIVE_DIRECTORY_ADMINISTRATOR,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, ADMINISTRATOR_NAME_PATTERN, ADMINISTRATOR_NAME_RULE)


class SqlVirtualNetworkRuleManager:
    """Virtual network rules admitting a subnet to a server (reference role ``server``)."""

    kind = ResourceKind.SQL_VNET_RULE

    def __init__(self, client: SqlManagementClient, tracker: OperationTracker) -> None:
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
        attrs: SqlVirtualNetworkRuleAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = VirtualNetworkRule(
            virtual_network_subnet_id=attrs.subnet_id,
            ignore_missing_vnet_service_endpoint=attrs.ignore_missing_service_endpoint,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.virtual_network_rules.begin_create_or_update,
            address.resource_group,
            server,
            address.name,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        rule = await run_remote(
            self._client.virtual_network_rules.get,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )
        return RemoteState.from_model(rule)

    async def delete(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> DeleteAck:
        return await delete_if_present(
            self,
            self._tracker,
            address,
            self._client.virtual_network_rules.begin_delete,
            address.resource_group,
            address.parent("server"),
            address.name,
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, VNET_RULE_NAME_PATTERN, VNET_RULE_NAME_RULE)
