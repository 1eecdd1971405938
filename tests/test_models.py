"""Tests for resource instance and attribute models."""

from __future__ import annotations

import pytest
from factories import (
    ADMIN_SID,
    RESOURCE_GROUP,
    SUBSCRIPTION_ID,
    make_instance,
    ref,
    server_attributes,
    sql_server,
)
from pydantic import ValidationError

from convergence.models import (
    OWNER_TAG,
    CosmosDBAttributes,
    MySqlAdministratorAttributes,
    MySqlServerAttributes,
    ProvisioningState,
    ResourceInstance,
    ResourceKind,
    ResourceStatus,
    SqlFirewallRuleAttributes,
    SqlServerAttributes,
    SqlVirtualNetworkRuleAttributes,
    StatusDelta,
    StorageAccountAttributes,
    get_attributes_model,
)


class TestResourceInstance:
    """Tests for the ResourceInstance envelope."""

    def test_parses_aliases(self) -> None:
        """Test that camelCase spec keys populate the model."""
        instance = ResourceInstance.model_validate(
            {
                "kind": "SqlDatabase",
                "name": "appdb",
                "resourceGroup": "rg-app",
                "dependsOn": [{"role": "server", "kind": "SqlServer", "name": "sql-app-weu"}],
                "deletionRequested": True,
            }
        )

        assert instance.kind == ResourceKind.SQL_DATABASE
        assert instance.resource_group == "rg-app"
        assert instance.deletion_requested is True
        assert instance.depends_on[0].role == "server"
        assert instance.status.state == ProvisioningState.PENDING

    def test_key(self) -> None:
        instance = make_instance(ResourceKind.SQL_SERVER, "sql-app-weu")

        assert instance.key == "SqlServer/rg-app/sql-app-weu"

    def test_resource_group_defaults_to_own_name(self) -> None:
        """Test that a resource group instance is addressed by its own name."""
        instance = ResourceInstance(kind=ResourceKind.RESOURCE_GROUP, name="rg-data")

        assert instance.resource_group == "rg-data"
        assert instance.key == "ResourceGroup/rg-data/rg-data"

    def test_resource_group_required_for_other_kinds(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            ResourceInstance(kind=ResourceKind.SQL_SERVER, name="sql-app-weu")

        assert "resourceGroup is required" in str(exc_info.value)

    def test_duplicate_roles_rejected(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            make_instance(
                ResourceKind.SQL_REPLICA,
                "appdb-secondary",
                depends_on=[
                    ref("server", ResourceKind.SQL_SERVER, "sql-a"),
                    ref("server", ResourceKind.SQL_SERVER, "sql-b"),
                ],
            )

        assert "dependency roles must be unique" in str(exc_info.value)

    def test_unknown_kind_rejected(self) -> None:
        with pytest.raises(ValidationError):
            ResourceInstance.model_validate(
                {"kind": "VirtualMachine", "name": "vm1", "resourceGroup": "rg"}
            )

    def test_dependency_keys_default_to_own_resource_group(self) -> None:
        instance = make_instance(
            ResourceKind.SQL_DATABASE,
            "appdb",
            depends_on=[ref("server", ResourceKind.SQL_SERVER, "sql-app-weu")],
        )

        assert instance.dependency_keys() == ["SqlServer/rg-app/sql-app-weu"]

    def test_dependency_keys_across_resource_groups(self) -> None:
        instance = make_instance(
            ResourceKind.SQL_REPLICA,
            "appdb-secondary",
            depends_on=[
                ref("server", ResourceKind.SQL_SERVER, "sql-app-neu"),
                ref("source", ResourceKind.SQL_DATABASE, "appdb").model_copy(
                    update={"resource_group": "rg-primary"}
                ),
            ],
        )

        assert instance.dependency_keys() == [
            "SqlServer/rg-app/sql-app-neu",
            "SqlDatabase/rg-primary/appdb",
        ]

    def test_address(self) -> None:
        """Test that parents are addressed by reference role."""
        instance = make_instance(
            ResourceKind.SQL_DATABASE,
            "appdb",
            depends_on=[ref("server", ResourceKind.SQL_SERVER, "sql-app-weu")],
        )

        address = instance.address(SUBSCRIPTION_ID)

        assert address.subscription_id == SUBSCRIPTION_ID
        assert address.resource_group == RESOURCE_GROUP
        assert address.parent("server") == "sql-app-weu"
        assert str(address) == f"{SUBSCRIPTION_ID}/rg-app/sql-app-weu/appdb"

    def test_address_missing_parent_role(self) -> None:
        instance = make_instance(ResourceKind.SQL_DATABASE, "appdb")

        with pytest.raises(ValueError) as exc_info:
            instance.address(SUBSCRIPTION_ID).parent("server")

        assert "requires a 'server' reference" in str(exc_info.value)

    def test_instance_subscription_overrides_default(self) -> None:
        other = "99999999-9999-9999-9999-999999999999"
        instance = make_instance(ResourceKind.SQL_SERVER, "sql-app-weu").model_copy(
            update={"subscription_id": other}
        )

        assert instance.address(SUBSCRIPTION_ID).subscription_id == other


class TestSpecHash:
    """Tests for the desired state hash."""

    def test_stable_across_key_order(self) -> None:
        a = make_instance(ResourceKind.SQL_SERVER, "s", {"location": "x", "version": "12.0"})
        b = make_instance(ResourceKind.SQL_SERVER, "s", {"version": "12.0", "location": "x"})

        assert a.spec_hash == b.spec_hash

    def test_changes_with_attributes(self) -> None:
        a = make_instance(ResourceKind.SQL_SERVER, "s", {"location": "westeurope"})
        b = make_instance(ResourceKind.SQL_SERVER, "s", {"location": "northeurope"})

        assert a.spec_hash != b.spec_hash

    def test_changes_with_deletion_request(self) -> None:
        a = make_instance(ResourceKind.SQL_SERVER, "s")
        b = make_instance(ResourceKind.SQL_SERVER, "s", deletion_requested=True)

        assert a.spec_hash != b.spec_hash

    def test_ignores_status(self) -> None:
        a = make_instance(ResourceKind.SQL_SERVER, "s")
        b = make_instance(
            ResourceKind.SQL_SERVER, "s", status=ResourceStatus(state=ProvisioningState.FAILED)
        )

        assert a.spec_hash == b.spec_hash


class TestStatusDelta:
    """Tests for StatusDelta."""

    def test_between_only_changed_fields(self) -> None:
        before = ResourceStatus()
        after = before.model_copy(update={"state": ProvisioningState.READY, "remote_id": "/x"})

        delta = StatusDelta.between(before, after)

        assert set(delta.changes) == {"state", "remote_id"}

    def test_empty(self) -> None:
        status = ResourceStatus()

        assert StatusDelta.between(status, status.model_copy()).empty

    def test_apply(self) -> None:
        before = ResourceStatus(retry_count=2)
        delta = StatusDelta(changes={"retry_count": 0, "message": "ok"})

        after = delta.apply(before)

        assert after.retry_count == 0
        assert after.message == "ok"
        assert before.retry_count == 2


class TestAttributeModels:
    """Tests for per-kind attribute validation."""

    def test_every_kind_has_a_model(self) -> None:
        for kind in ResourceKind:
            assert get_attributes_model(kind) is not None

    def test_sql_server_requires_entra_administrator(self) -> None:
        with pytest.raises(ValidationError):
            SqlServerAttributes.model_validate({"location": "westeurope"})

    def test_sql_server_rejects_password(self) -> None:
        """Test that admin passwords are not accepted in specs."""
        with pytest.raises(ValidationError):
            SqlServerAttributes.model_validate(
                server_attributes(administratorLoginPassword="P@ssw0rd!")
            )

    def test_sql_server_defaults(self) -> None:
        attrs = SqlServerAttributes.model_validate(server_attributes())

        assert attrs.version == "12.0"
        assert attrs.minimal_tls_version == "1.2"
        assert attrs.administrator.login == "sql-admins"

    def test_sql_server_invalid_tls(self) -> None:
        with pytest.raises(ValidationError):
            SqlServerAttributes.model_validate(server_attributes(minimalTlsVersion="0.9"))

    def test_firewall_rule_range(self) -> None:
        attrs = SqlFirewallRuleAttributes.model_validate(
            {"startIpAddress": "10.0.0.1", "endIpAddress": "10.0.0.10"}
        )

        assert attrs.start_ip_address == "10.0.0.1"

    def test_firewall_rule_inverted_range(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            SqlFirewallRuleAttributes.model_validate(
                {"startIpAddress": "10.0.0.10", "endIpAddress": "10.0.0.1"}
            )

        assert "startIpAddress must not be greater" in str(exc_info.value)

    def test_firewall_rule_rejects_ipv6(self) -> None:
        with pytest.raises(ValidationError):
            SqlFirewallRuleAttributes.model_validate(
                {"startIpAddress": "::1", "endIpAddress": "::1"}
            )

    def test_cosmosdb_consistency(self) -> None:
        with pytest.raises(ValidationError):
            CosmosDBAttributes.model_validate(
                {"location": "westeurope", "consistencyLevel": "Linearizable"}
            )

    def test_storage_defaults(self) -> None:
        attrs = StorageAccountAttributes.model_validate({"location": "westeurope"})

        assert attrs.sku_name == "Standard_LRS"
        assert attrs.kind == "StorageV2"
        assert attrs.https_only is True

    def test_storage_invalid_sku(self) -> None:
        with pytest.raises(ValidationError):
            StorageAccountAttributes.model_validate(
                {"location": "westeurope", "skuName": "Gold_LRS"}
            )

    def test_cosmosdb_offer_type(self) -> None:
        attrs = CosmosDBAttributes.model_validate({"location": "westeurope"})

        assert attrs.offer_type == "Standard"
        with pytest.raises(ValidationError):
            CosmosDBAttributes.model_validate({"location": "westeurope", "offerType": "Premium"})

    def test_mysql_server_defaults(self) -> None:
        attrs = MySqlServerAttributes.model_validate({"location": "westeurope"})

        assert attrs.version == "8.0"
        assert attrs.administrator_login == "mysqladmin"
        assert attrs.minimal_tls_version == "TLS1_2"
        assert attrs.storage_mb == 5120

    @pytest.mark.parametrize(
        "overrides",
        [
            {"version": "9.0"},
            {"sslEnforcement": "On"},
            {"backupRetentionDays": 3},
            {"administratorLogin": "1admin"},
            {"administratorLoginPassword": "P@ssw0rd!"},
        ],
    )
    def test_mysql_server_invalid(self, overrides: dict[str, object]) -> None:
        with pytest.raises(ValidationError):
            MySqlServerAttributes.model_validate({"location": "westeurope", **overrides})

    def test_mysql_administrator_requires_tenant(self) -> None:
        with pytest.raises(ValidationError):
            MySqlAdministratorAttributes.model_validate({"login": "dba", "sid": ADMIN_SID})

    def test_virtual_network_rule_subnet_id(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            SqlVirtualNetworkRuleAttributes.model_validate(
                {"subnetId": "/subscriptions/x/resourceGroups/rg/providers/Microsoft.Network/virtualNetworks/vnet"}
            )

        assert "subnetId must look like" in str(exc_info.value)


class TestOwnership:
    """Tests for the ownership tag stamped on created resources."""

    def test_tag_added_to_declared_tags(self) -> None:
        instance = sql_server()
        instance = instance.model_copy(
            update={"attributes": {**instance.attributes, "tags": {"env": "prod"}}}
        )

        tags = instance.owned_attributes()["tags"]

        assert tags == {"env": "prod", OWNER_TAG: instance.key}
        assert "tags" not in sql_server().attributes

    def test_untagged_kinds_unchanged(self) -> None:
        instance = make_instance(
            ResourceKind.SQL_ADMINISTRATOR,
            "dba",
            {"login": "dba", "sid": ADMIN_SID},
            depends_on=[ref("server", ResourceKind.SQL_SERVER, "sql-app-weu")],
        )

        assert instance.owned_attributes() == instance.attributes

    def test_owns(self) -> None:
        instance = sql_server()

        assert instance.owns({OWNER_TAG: instance.key})
        assert not instance.owns({OWNER_TAG: "SqlServer/rg-other/sql-app-weu"})
        assert not instance.owns({})
        assert not instance.owns(None)

    def test_declares_other_subscription(self) -> None:
        instance = sql_server().model_copy(update={"subscription_id": SUBSCRIPTION_ID})

        assert not instance.declares_other_subscription(SUBSCRIPTION_ID.upper())
        assert instance.declares_other_subscription("99999999-0000-0000-0000-000000000009")
        assert not sql_server().declares_other_subscription("99999999-0000-0000-0000-000000000009")
