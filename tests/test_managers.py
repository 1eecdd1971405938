"""Tests for the per-kind resource managers against the mock Azure clients."""

from __future__ import annotations

from typing import Any

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError
from azure_mock import MockAzureState, MockMySqlClient, http_error
from azure_mock.resources import (
    COSMOSDB_ACCOUNT_TYPE,
    MYSQL_SERVER_TYPE,
    SQL_SERVER_TYPE,
    STORAGE_ACCOUNT_TYPE,
)
from factories import ADMIN_SID, RESOURCE_GROUP, SUBSCRIPTION_ID, TENANT_ID, server_attributes
from pydantic import ValidationError

from convergence.errors import NameUnavailableError
from convergence.managers.base import NameReason, ResourceManager
from convergence.managers.mysql import MySqlServerManager
from convergence.models import ResourceAddress, ResourceKind
from convergence.operations import OperationTracker

SERVER = "sql-app-weu"
MYSQL_SERVER = "mysql-app-weu"
SUBNET_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-network"
    "/providers/Microsoft.Network/virtualNetworks/vnet-app/subnets/data"
)


def address(name: str, resource_group: str = RESOURCE_GROUP, **parents: str) -> ResourceAddress:
    return ResourceAddress(SUBSCRIPTION_ID, resource_group, name, parents=parents)


async def create_server(managers: dict[ResourceKind, Any], name: str = SERVER) -> str:
    remote = await managers[ResourceKind.SQL_SERVER].create_or_update(
        address(name), server_attributes()
    )
    return remote.resource_id


async def create_mysql_server(managers: dict[ResourceKind, Any], name: str = MYSQL_SERVER) -> str:
    remote = await managers[ResourceKind.MYSQL_SERVER].create_or_update(
        address(name), {"location": "westeurope"}
    )
    return remote.resource_id


class TestManagerProtocol:
    """Every manager exposes the same capability set."""

    def test_all_kinds_covered(self, managers: dict[ResourceKind, Any]) -> None:
        assert set(managers) == set(ResourceKind)

    def test_conforms_to_protocol(self, managers: dict[ResourceKind, Any]) -> None:
        for kind, manager in managers.items():
            assert isinstance(manager, ResourceManager)
            assert manager.kind == kind


class TestResourceGroupManager:
    """Tests for ResourceGroupManager."""

    @pytest.mark.asyncio
    async def test_create_is_synchronous(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        manager = managers[ResourceKind.RESOURCE_GROUP]

        remote = await manager.create_or_update(
            address("rg-data", "rg-data"), {"location": "westeurope", "tags": {"env": "test"}}
        )

        assert remote.resource_id == state.resource_group_id("rg-data")
        assert state.call_count("create_or_update", "rg-data") == 1
        assert state.get(remote.resource_id).tags == {"env": "test"}

    @pytest.mark.asyncio
    async def test_invalid_name_rejected_locally(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(NameUnavailableError) as exc_info:
            await managers[ResourceKind.RESOURCE_GROUP].create_or_update(
                address("rg-data.", "rg-data."), {"location": "westeurope"}
            )

        assert exc_info.value.reason == NameReason.INVALID.value
        assert state.calls == []


class TestSqlServerManager:
    """Tests for SqlServerManager."""

    @pytest.mark.asyncio
    async def test_create(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        remote = await managers[ResourceKind.SQL_SERVER].create_or_update(
            address(SERVER), server_attributes()
        )

        assert remote.resource_id == state.provider_id(
            RESOURCE_GROUP, "Microsoft.Sql", "servers", SERVER
        )
        assert remote.name == SERVER
        assert state.call_count("check_name_availability", SERVER) == 1
        assert state.call_count("begin_create_or_update", SERVER) == 1

    @pytest.mark.asyncio
    async def test_entra_only_administrator(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        """Test that servers are created with Entra ID only authentication."""
        resource_id = await create_server(managers)

        administrators = state.get(resource_id).properties["administrators"]

        assert administrators["azure_ad_only_authentication"] is True
        assert administrators["sid"] == ADMIN_SID
        assert administrators["tenant_id"] == TENANT_ID

    @pytest.mark.asyncio
    async def test_name_already_exists(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        state.reserve_name(SQL_SERVER_TYPE, SERVER)

        with pytest.raises(NameUnavailableError) as exc_info:
            await create_server(managers)

        assert exc_info.value.reason == NameReason.ALREADY_EXISTS.value
        assert state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_invalid_name(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        with pytest.raises(NameUnavailableError) as exc_info:
            await create_server(managers, "SQL-App")

        assert exc_info.value.reason == NameReason.INVALID.value
        assert state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_force_update_skips_name_check(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        """An update of a resource we own must not trip over its own name."""
        resource_id = await create_server(managers)
        state.clear_calls()

        remote = await managers[ResourceKind.SQL_SERVER].create_or_update(
            address(SERVER), server_attributes(minimalTlsVersion="1.3"), force_update=True
        )

        assert remote.resource_id == resource_id
        assert state.call_count("check_name_availability") == 0
        assert state.get(resource_id).properties["minimal_tls_version"] == "1.3"

    @pytest.mark.asyncio
    async def test_create_without_resource_group(
        self, managers: dict[ResourceKind, Any]
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await managers[ResourceKind.SQL_SERVER].create_or_update(
                address(SERVER, "rg-missing"), server_attributes()
            )

    @pytest.mark.asyncio
    async def test_invalid_attributes_raise_before_any_call(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(ValidationError):
            await managers[ResourceKind.SQL_SERVER].create_or_update(
                address(SERVER), {"location": "westeurope"}
            )

        assert state.calls == []

    @pytest.mark.asyncio
    async def test_remote_failure_from_poller(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        state.inject_error(
            "begin_create_or_update",
            SERVER,
            http_error(409, "AnotherOperationInProgress"),
            on_result=True,
        )

        with pytest.raises(HttpResponseError):
            await create_server(managers)

        assert not state.resources_of_type(SQL_SERVER_TYPE)


class TestSqlDatabaseManager:
    """Tests for SqlDatabaseManager."""

    @pytest.mark.asyncio
    async def test_create_on_server(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_server(managers)

        remote = await managers[ResourceKind.SQL_DATABASE].create_or_update(
            address("appdb", server=SERVER), {"location": "westeurope", "skuName": "S1"}
        )

        assert remote.resource_id == f"{server_id}/databases/appdb"
        assert state.get(remote.resource_id).properties["sku"]["name"] == "S1"

    @pytest.mark.asyncio
    async def test_missing_parent_is_not_found(
        self, managers: dict[ResourceKind, Any]
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await managers[ResourceKind.SQL_DATABASE].create_or_update(
                address("appdb", server=SERVER), {"location": "westeurope"}
            )

    @pytest.mark.asyncio
    async def test_requires_server_reference(self, managers: dict[ResourceKind, Any]) -> None:
        with pytest.raises(ValueError) as exc_info:
            await managers[ResourceKind.SQL_DATABASE].create_or_update(
                address("appdb"), {"location": "westeurope"}
            )

        assert "'server' reference" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_invalid_name_checked_locally(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(NameUnavailableError):
            await managers[ResourceKind.SQL_DATABASE].create_or_update(
                address("app/db", server=SERVER), {"location": "westeurope"}
            )

        assert state.calls == []


class TestSqlReplicaManager:
    """Tests for SqlReplicaManager."""

    @pytest.mark.asyncio
    async def test_creates_geo_secondary(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        await create_server(managers)
        await create_server(managers, "sql-app-neu")
        source = await managers[ResourceKind.SQL_DATABASE].create_or_update(
            address("appdb", server=SERVER), {"location": "westeurope"}
        )

        remote = await managers[ResourceKind.SQL_REPLICA].create_or_update(
            address("appdb", server="sql-app-neu"),
            {"location": "northeurope"},
            dependencies={"source": source.resource_id},
        )

        properties = state.get(remote.resource_id).properties
        assert properties["create_mode"] == "Secondary"
        assert properties["secondary_type"] == "Geo"
        assert properties["source_database_id"] == source.resource_id

    @pytest.mark.asyncio
    async def test_requires_source(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(ValueError) as exc_info:
            await managers[ResourceKind.SQL_REPLICA].create_or_update(
                address("appdb", server=SERVER), {"location": "northeurope"}
            )

        assert "'source'" in str(exc_info.value)
        assert state.calls == []

    @pytest.mark.asyncio
    async def test_missing_source_database(
        self, managers: dict[ResourceKind, Any]
    ) -> None:
        await create_server(managers)

        with pytest.raises(ResourceNotFoundError):
            await managers[ResourceKind.SQL_REPLICA].create_or_update(
                address("appdb-secondary", server=SERVER),
                {"location": "northeurope"},
                dependencies={"source": f"{SERVER}/databases/gone"},
            )


class TestSqlChildManagers:
    """Tests for firewall rules, virtual network rules and the Entra ID administrator."""

    @pytest.mark.asyncio
    async def test_firewall_rule_is_synchronous(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_server(managers)

        remote = await managers[ResourceKind.SQL_FIREWALL_RULE].create_or_update(
            address("allow-office", server=SERVER),
            {"startIpAddress": "10.0.0.1", "endIpAddress": "10.0.0.10"},
        )

        assert remote.resource_id == f"{server_id}/firewallRules/allow-office"
        assert state.call_count("create_or_update", "allow-office") == 1

    @pytest.mark.asyncio
    async def test_administrator_uses_service_name(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_server(managers)

        remote = await managers[ResourceKind.SQL_ADMINISTRATOR].create_or_update(
            address("dba-group", server=SERVER),
            {"login": "dba-group", "sid": ADMIN_SID, "tenantId": TENANT_ID},
        )

        assert remote.resource_id == f"{server_id}/administrators/ActiveDirectory"
        assert state.call_count("begin_create_or_update", "ActiveDirectory") == 1

    @pytest.mark.asyncio
    async def test_virtual_network_rule(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_server(managers)

        remote = await managers[ResourceKind.SQL_VNET_RULE].create_or_update(
            address("allow-data-subnet", server=SERVER),
            {"subnetId": SUBNET_ID, "ignoreMissingServiceEndpoint": True},
        )

        properties = state.get(remote.resource_id).properties
        assert remote.resource_id == f"{server_id}/virtualNetworkRules/allow-data-subnet"
        assert properties["virtual_network_subnet_id"] == SUBNET_ID
        assert properties["ignore_missing_vnet_service_endpoint"] is True
        assert state.call_count("begin_create_or_update", "allow-data-subnet") == 1


class TestCosmosDBManager:
    """Tests for CosmosDBManager."""

    @pytest.mark.asyncio
    async def test_create(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        remote = await managers[ResourceKind.COSMOS_DB].create_or_update(
            address("cosmos-app"), {"location": "westeurope", "consistencyLevel": "Strong"}
        )

        properties = state.get(remote.resource_id).properties
        assert properties["consistency_policy"]["default_consistency_level"] == "Strong"
        assert properties["locations"][0]["location_name"] == "westeurope"

    @pytest.mark.asyncio
    async def test_offer_type_from_attributes(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        remote = await managers[ResourceKind.COSMOS_DB].create_or_update(
            address("cosmos-app"), {"location": "westeurope", "offerType": "Standard"}
        )

        assert state.get(remote.resource_id).properties["database_account_offer_type"] == "Standard"

    @pytest.mark.asyncio
    async def test_name_taken_globally(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        state.reserve_name(COSMOSDB_ACCOUNT_TYPE, "cosmos-app")

        availability = await managers[ResourceKind.COSMOS_DB].check_name_availability(
            address("cosmos-app")
        )

        assert not availability.available
        assert availability.reason == NameReason.ALREADY_EXISTS

    @pytest.mark.asyncio
    async def test_invalid_name_skips_remote_check(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        availability = await managers[ResourceKind.COSMOS_DB].check_name_availability(
            address("Cosmos_App")
        )

        assert availability.reason == NameReason.INVALID
        assert state.call_count("check_name_exists") == 0


class TestStorageAccountManager:
    """Tests for StorageAccountManager."""

    @pytest.mark.asyncio
    async def test_create(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        remote = await managers[ResourceKind.STORAGE_ACCOUNT].create_or_update(
            address("stappweu"), {"location": "westeurope"}
        )

        assert state.call_count("begin_create", "stappweu") == 1
        assert state.get(remote.resource_id).properties["sku"]["name"] == "Standard_LRS"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "name,reason",
        [("st-app", NameReason.INVALID), ("sttaken", NameReason.ALREADY_EXISTS)],
    )
    async def test_name_unavailable(
        self,
        managers: dict[ResourceKind, Any],
        state: MockAzureState,
        name: str,
        reason: NameReason,
    ) -> None:
        state.reserve_name(STORAGE_ACCOUNT_TYPE, "sttaken")

        with pytest.raises(NameUnavailableError) as exc_info:
            await managers[ResourceKind.STORAGE_ACCOUNT].create_or_update(
                address(name), {"location": "westeurope"}
            )

        assert exc_info.value.reason == reason.value
        assert state.mutating_calls() == []


class TestMySqlServerManager:
    """Tests for MySqlServerManager and MySqlReplicaManager."""

    @pytest.mark.asyncio
    async def test_create(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        resource_id = await create_mysql_server(managers)

        properties = state.get(resource_id).properties
        assert resource_id == state.provider_id(
            RESOURCE_GROUP, "Microsoft.DBforMySQL", "servers", MYSQL_SERVER
        )
        assert properties["sku"]["name"] == "GP_Gen5_2"
        assert properties["properties"]["version"] == "8.0"
        assert properties["properties"]["storage_profile"]["geo_redundant_backup"] == "Disabled"
        assert state.call_count("check_name_availability", MYSQL_SERVER) == 1
        assert state.call_count("begin_create", MYSQL_SERVER) == 1

    @pytest.mark.asyncio
    async def test_administrator_password_generated_per_create(
        self, state: MockAzureState, tracker: OperationTracker
    ) -> None:
        """Each create sends a fresh password, and none is kept in the resource."""
        client = MockMySqlClient(state)
        manager = MySqlServerManager(client, tracker)

        first = await manager.create_or_update(address("mysql-a"), {"location": "westeurope"})
        await manager.create_or_update(address("mysql-b"), {"location": "westeurope"})

        sent = client.servers.passwords_received
        assert len(sent) == 2
        assert sent[0] != sent[1]
        assert all(len(password) == 32 for password in sent)
        stored = state.get(first.resource_id).properties["properties"]
        assert "administrator_login_password" not in stored
        assert stored["administrator_login"] == "mysqladmin"

    @pytest.mark.asyncio
    async def test_name_already_exists(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        state.reserve_name(MYSQL_SERVER_TYPE, MYSQL_SERVER)

        with pytest.raises(NameUnavailableError) as exc_info:
            await create_mysql_server(managers)

        assert exc_info.value.reason == NameReason.ALREADY_EXISTS.value
        assert state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_force_update_patches_existing_server(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        resource_id = await create_mysql_server(managers)
        state.clear_calls()

        await managers[ResourceKind.MYSQL_SERVER].create_or_update(
            address(MYSQL_SERVER),
            {"location": "westeurope", "storageMB": 10240, "tags": {"env": "prod"}},
            force_update=True,
        )

        resource = state.get(resource_id)
        assert resource.tags == {"env": "prod"}
        assert resource.properties["storage_profile"]["storage_mb"] == 10240
        assert state.call_count("begin_update", MYSQL_SERVER) == 1
        assert state.call_count("begin_create") == 0
        assert state.call_count("check_name_availability") == 0

    @pytest.mark.asyncio
    async def test_force_update_of_vanished_server_creates_it(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        await managers[ResourceKind.MYSQL_SERVER].create_or_update(
            address(MYSQL_SERVER), {"location": "westeurope"}, force_update=True
        )

        assert state.call_count("begin_update") == 0
        assert state.call_count("begin_create", MYSQL_SERVER) == 1
        assert state.call_count("check_name_availability") == 0

    @pytest.mark.asyncio
    async def test_replica_from_source_server(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        source_id = await create_mysql_server(managers)

        remote = await managers[ResourceKind.MYSQL_REPLICA].create_or_update(
            address("mysql-app-neu"),
            {"location": "northeurope"},
            dependencies={"source": source_id},
        )

        properties = state.get(remote.resource_id).properties["properties"]
        assert properties["create_mode"] == "Replica"
        assert properties["source_server_id"] == source_id
        assert "administrator_login_password" not in properties

    @pytest.mark.asyncio
    async def test_replica_requires_source(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(ValueError) as exc_info:
            await managers[ResourceKind.MYSQL_REPLICA].create_or_update(
                address("mysql-app-neu"), {"location": "northeurope"}
            )

        assert "'source'" in str(exc_info.value)
        assert state.calls == []

    @pytest.mark.asyncio
    async def test_replica_of_missing_source(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(ResourceNotFoundError):
            await managers[ResourceKind.MYSQL_REPLICA].create_or_update(
                address("mysql-app-neu"),
                {"location": "northeurope"},
                dependencies={
                    "source": state.provider_id(
                        RESOURCE_GROUP, "Microsoft.DBforMySQL", "servers", "gone"
                    )
                },
            )


class TestMySqlChildManagers:
    """Tests for MySQL databases, firewall rules, virtual network rules and administrators."""

    @pytest.mark.asyncio
    async def test_database(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        server_id = await create_mysql_server(managers)

        remote = await managers[ResourceKind.MYSQL_DATABASE].create_or_update(
            address("appdb", server=MYSQL_SERVER), {"charset": "utf8mb4", "collation": "utf8mb4_bin"}
        )

        properties = state.get(remote.resource_id).properties
        assert remote.resource_id == f"{server_id}/databases/appdb"
        assert properties["charset"] == "utf8mb4"
        assert properties["collation"] == "utf8mb4_bin"

    @pytest.mark.asyncio
    async def test_invalid_database_name_checked_locally(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        with pytest.raises(NameUnavailableError):
            await managers[ResourceKind.MYSQL_DATABASE].create_or_update(
                address("app-db", server=MYSQL_SERVER), {}
            )

        assert state.calls == []

    @pytest.mark.asyncio
    async def test_firewall_rule_is_long_running(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_mysql_server(managers)

        remote = await managers[ResourceKind.MYSQL_FIREWALL_RULE].create_or_update(
            address("allow-office", server=MYSQL_SERVER),
            {"startIpAddress": "10.0.0.1", "endIpAddress": "10.0.0.10"},
        )

        assert remote.resource_id == f"{server_id}/firewallRules/allow-office"
        assert state.call_count("begin_create_or_update", "allow-office") == 1

    @pytest.mark.asyncio
    async def test_virtual_network_rule(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_mysql_server(managers)

        remote = await managers[ResourceKind.MYSQL_VNET_RULE].create_or_update(
            address("allow-data-subnet", server=MYSQL_SERVER), {"subnetId": SUBNET_ID}
        )

        properties = state.get(remote.resource_id).properties
        assert remote.resource_id == f"{server_id}/virtualNetworkRules/allow-data-subnet"
        assert properties["virtual_network_subnet_id"] == SUBNET_ID
        assert properties["ignore_missing_vnet_service_endpoint"] is False

    @pytest.mark.asyncio
    async def test_administrator_is_addressed_by_server(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        server_id = await create_mysql_server(managers)
        manager = managers[ResourceKind.MYSQL_ADMINISTRATOR]

        remote = await manager.create_or_update(
            address("dba-group", server=MYSQL_SERVER),
            {"login": "dba-group", "sid": ADMIN_SID, "tenantId": TENANT_ID},
        )
        ack = await manager.delete(address("dba-group", server=MYSQL_SERVER))

        assert remote.resource_id == f"{server_id}/administrators/activeDirectory"
        assert not ack.already_absent
        assert not state.exists(remote.resource_id)
        assert state.exists(server_id)
        assert state.call_count("begin_create_or_update", MYSQL_SERVER) == 1


def absent_address(kind: ResourceKind) -> ResourceAddress:
    if kind == ResourceKind.RESOURCE_GROUP:
        return address("rg-gone", "rg-gone")
    if kind in (
        ResourceKind.SQL_DATABASE,
        ResourceKind.SQL_REPLICA,
        ResourceKind.SQL_FIREWALL_RULE,
        ResourceKind.SQL_ADMINISTRATOR,
        ResourceKind.SQL_VNET_RULE,
    ):
        return address("gone", server=SERVER)
    if kind in (
        ResourceKind.MYSQL_DATABASE,
        ResourceKind.MYSQL_FIREWALL_RULE,
        ResourceKind.MYSQL_VNET_RULE,
        ResourceKind.MYSQL_ADMINISTRATOR,
    ):
        return address("gone", server=MYSQL_SERVER)
    return address("gone")


class TestDelete:
    """Tests for idempotent deletion across every kind."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", list(ResourceKind))
    async def test_absent_resource_acknowledged_without_mutation(
        self,
        managers: dict[ResourceKind, Any],
        state: MockAzureState,
        kind: ResourceKind,
    ) -> None:
        ack = await managers[kind].delete(absent_address(kind))

        assert ack.already_absent
        assert state.mutating_calls() == []

    @pytest.mark.asyncio
    async def test_delete_twice(self, managers: dict[ResourceKind, Any], state: MockAzureState) -> None:
        resource_id = await create_server(managers)
        manager = managers[ResourceKind.SQL_SERVER]

        first = await manager.delete(address(SERVER))
        second = await manager.delete(address(SERVER))

        assert not first.already_absent
        assert second.already_absent
        assert not state.exists(resource_id)
        assert state.call_count("begin_delete", SERVER) == 1

    @pytest.mark.asyncio
    async def test_synchronous_delete(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        manager = managers[ResourceKind.STORAGE_ACCOUNT]
        remote = await manager.create_or_update(address("stappweu"), {"location": "westeurope"})

        ack = await manager.delete(address("stappweu"))

        assert not ack.already_absent
        assert not state.exists(remote.resource_id)
        assert state.call_count("delete", "stappweu") == 1

    @pytest.mark.asyncio
    async def test_lookup_failure_propagates(
        self, managers: dict[ResourceKind, Any], state: MockAzureState
    ) -> None:
        """Only NotFound short-circuits a delete."""
        await create_server(managers)
        state.inject_error("get", SERVER, http_error(503))

        with pytest.raises(HttpResponseError):
            await managers[ResourceKind.SQL_SERVER].delete(address(SERVER))

        assert state.call_count("begin_delete") == 0
