"""Azure Database for MySQL resource managers.

Covers single servers, read replicas, databases, firewall rules, virtual
network rules and the Entra ID administrator of a server. Children are
addressed through the ``server`` reference role; replicas take the remote id
of the server they replicate through the ``source`` role.

Servers are created with ``begin_create`` and changed with ``begin_update``,
so an update of a server that vanished out of band falls back to a create.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Mapping
from typing import Any

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.rdbms.mysql import MySQLManagementClient
from azure.mgmt.rdbms.mysql.models import (
    Database,
    FirewallRule,
    NameAvailabilityRequest,
    ServerAdministratorResource,
    ServerForCreate,
    ServerPropertiesForDefaultCreate,
    ServerPropertiesForReplica,
    ServerUpdateParameters,
    Sku,
    StorageProfile,
    VirtualNetworkRule,
)

from ..models import (
    MySqlAdministratorAttributes,
    MySqlDatabaseAttributes,
    MySqlFirewallRuleAttributes,
    MySqlReplicaAttributes,
    MySqlServerAttributes,
    MySqlVirtualNetworkRuleAttributes,
    ResourceAddress,
    ResourceKind,
)
from ..operations import CancellationToken, OperationTracker, run_remote
from ..security import generate_administrator_password
from .base import (
    DeleteAck,
    NameAvailability,
    NameReason,
    RemoteState,
    ResourceManager,
    check_name_pattern,
    delete_if_present,
    ensure_name_available,
    enum_value,
    issue_and_wait,
    parse_attributes,
)

logger = logging.getLogger(__name__)

SERVER_RESOURCE_TYPE = "Microsoft.DBforMySQL/servers"

ACTIVE_DIRECTORY_ADMINISTRATOR = "ActiveDirectory"

DATABASE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_$]{1,64}")
DATABASE_NAME_RULE = "1-64 letters, digits, underscores or dollar signs"

FIREWALL_RULE_NAME_PATTERN = re.compile(r"[A-Za-z0-9_-]{1,128}")
FIREWALL_RULE_NAME_RULE = "1-128 letters, digits, underscores or hyphens"

VNET_RULE_NAME_PATTERN = re.compile(r"[A-Za-z0-9](?:[A-Za-z0-9_.-]{0,126}[A-Za-z0-9_])?")
VNET_RULE_NAME_RULE = "1-128 letters, digits, underscores, periods or hyphens, no leading or trailing period"

ADMINISTRATOR_NAME_PATTERN = re.compile(r"[A-Za-z0-9._-]{1,128}")
ADMINISTRATOR_NAME_RULE = "1-128 letters, digits, periods, underscores or hyphens"


def _sku(name: str | None, tier: str | None) -> Sku | None:
    if name is None:
        return None
    return Sku(name=name, tier=tier)


def _storage_profile(attrs: MySqlServerAttributes) -> StorageProfile:
    return StorageProfile(
        storage_mb=attrs.storage_mb,
        backup_retention_days=attrs.backup_retention_days,
        geo_redundant_backup="Enabled" if attrs.geo_redundant_backup else "Disabled",
    )


async def _exists(
    manager: ResourceManager, address: ResourceAddress, token: CancellationToken | None
) -> bool:
    try:
        await manager.get(address, token=token)
    except ResourceNotFoundError:
        return False
    return True


async def _check_server_name(
    client: MySQLManagementClient, name: str, token: CancellationToken | None
) -> NameAvailability:
    response = await run_remote(
        client.check_name_availability.execute,
        NameAvailabilityRequest(name=name, type=SERVER_RESOURCE_TYPE),
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


class MySqlServerManager:
    """MySQL single servers."""

    kind = ResourceKind.MYSQL_SERVER

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlServerAttributes = parse_attributes(self.kind, attributes)
        if force_update and await _exists(self, address, token):
            parameters = ServerUpdateParameters(
                sku=_sku(attrs.sku_name, attrs.sku_tier),
                tags=attrs.tags or None,
                storage_profile=_storage_profile(attrs),
                version=attrs.version,
                ssl_enforcement=attrs.ssl_enforcement,
                minimal_tls_version=attrs.minimal_tls_version,
                public_network_access=attrs.public_network_access,
            )
            result = await issue_and_wait(
                self._tracker,
                "update",
                address,
                self._client.servers.begin_update,
                address.resource_group,
                address.name,
                parameters,
                token=token,
            )
            return RemoteState.from_model(result)

        if not force_update:
            await ensure_name_available(self, address, token)
        parameters = ServerForCreate(
            location=attrs.location,
            tags=attrs.tags or None,
            sku=_sku(attrs.sku_name, attrs.sku_tier),
            properties=ServerPropertiesForDefaultCreate(
                version=attrs.version,
                ssl_enforcement=attrs.ssl_enforcement,
                minimal_tls_version=attrs.minimal_tls_version,
                public_network_access=attrs.public_network_access,
                storage_profile=_storage_profile(attrs),
                administrator_login=attrs.administrator_login,
                administrator_login_password=generate_administrator_password(),
            ),
        )
        result = await issue_and_wait(
            self._tracker,
            "create",
            address,
            self._client.servers.begin_create,
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
        return await _check_server_name(self._client, address.name, token)


class MySqlReplicaManager:
    """Read replicas of a MySQL server.

    The replica is a server of its own, created from the server referenced
    as ``source``. The source's remote id is supplied by the controller
    through ``dependencies``.
    """

    kind = ResourceKind.MYSQL_REPLICA

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlReplicaAttributes = parse_attributes(self.kind, attributes)
        source_id = (dependencies or {}).get("source")
        if not source_id:
            raise ValueError(f"{address.name} requires the remote id of its 'source' server")

        if force_update and await _exists(self, address, token):
            parameters = ServerUpdateParameters(
                sku=_sku(attrs.sku_name, attrs.sku_tier),
                tags=attrs.tags or None,
            )
            result = await issue_and_wait(
                self._tracker,
                "update",
                address,
                self._client.servers.begin_update,
                address.resource_group,
                address.name,
                parameters,
                token=token,
            )
            return RemoteState.from_model(result)

        if not force_update:
            await ensure_name_available(self, address, token)
        parameters = ServerForCreate(
            location=attrs.location,
            tags=attrs.tags or None,
            sku=_sku(attrs.sku_name, attrs.sku_tier),
            properties=ServerPropertiesForReplica(source_server_id=source_id),
        )
        result = await issue_and_wait(
            self._tracker,
            "create",
            address,
            self._client.servers.begin_create,
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
        return await _check_server_name(self._client, address.name, token)


class MySqlDatabaseManager:
    """Databases on a MySQL server (reference role ``server``)."""

    kind = ResourceKind.MYSQL_DATABASE

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlDatabaseAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.databases.begin_create_or_update,
            address.resource_group,
            server,
            address.name,
            Database(charset=attrs.charset, collation=attrs.collation),
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


class MySqlFirewallRuleManager:
    """Firewall rules of a MySQL server (reference role ``server``)."""

    kind = ResourceKind.MYSQL_FIREWALL_RULE

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlFirewallRuleAttributes = parse_attributes(self.kind, attributes)
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
            self._client.firewall_rules.begin_create_or_update,
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
            self._client.firewall_rules.begin_delete,
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


class MySqlVirtualNetworkRuleManager:
    """Virtual network rules of a MySQL server (reference role ``server``)."""

    kind = ResourceKind.MYSQL_VNET_RULE

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlVirtualNetworkRuleAttributes = parse_attributes(self.kind, attributes)
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


class MySqlAdministratorManager:
    """Entra ID administrator of a MySQL server (reference role ``server``).

    A server has at most one administrator, so the instance name is only a
    local identifier and never reaches the service.
    """

    kind = ResourceKind.MYSQL_ADMINISTRATOR

    def __init__(self, client: MySQLManagementClient, tracker: OperationTracker) -> None:
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
        attrs: MySqlAdministratorAttributes = parse_attributes(self.kind, attributes)
        server = address.parent("server")
        if not force_update:
            await ensure_name_available(self, address, token)

        parameters = ServerAdministratorResource(
            administrator_type=ACTIVE_DIRECTORY_ADMINISTRATOR,
            login=attrs.login,
            sid=attrs.sid,
            tenant_id=attrs.tenant_id,
        )
        result = await issue_and_wait(
            self._tracker,
            "create_or_update",
            address,
            self._client.server_administrators.begin_create_or_update,
            address.resource_group,
            server,
            parameters,
            token=token,
        )
        return RemoteState.from_model(result)

    async def get(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> RemoteState:
        admin = await run_remote(
            self._client.server_administrators.get,
            address.resource_group,
            address.parent("server"),
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
            self._client.server_administrators.begin_delete,
            address.resource_group,
            address.parent("server"),
            token=token,
        )

    async def check_name_availability(
        self, address: ResourceAddress, *, token: CancellationToken | None = None
    ) -> NameAvailability:
        return check_name_pattern(address.name, ADMINISTRATOR_NAME_PATTERN, ADMINISTRATOR_NAME_RULE)
