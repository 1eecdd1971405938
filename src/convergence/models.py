"""Pydantic models for resource instances, their status and attributes.

These models provide:
1. Type-safe parsing of declarative resource specs
2. Validation at the boundary (fail fast, fail loudly)
3. Per-kind attribute schemas consumed by the resource managers
"""

from __future__ import annotations

import hashlib
import ipaddress
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator


class ResourceKind(str, Enum):
    """Manageable remote resource kinds."""

    RESOURCE_GROUP = "ResourceGroup"
    SQL_SERVER = "SqlServer"
    SQL_DATABASE = "SqlDatabase"
    SQL_FIREWALL_RULE = "SqlFirewallRule"
    SQL_ADMINISTRATOR = "SqlAdministrator"
    SQL_REPLICA = "SqlReplica"
    SQL_VNET_RULE = "SqlVirtualNetworkRule"
    MYSQL_SERVER = "MySqlServer"
    MYSQL_REPLICA = "MySqlReplica"
    MYSQL_DATABASE = "MySqlDatabase"
    MYSQL_FIREWALL_RULE = "MySqlFirewallRule"
    MYSQL_VNET_RULE = "MySqlVirtualNetworkRule"
    MYSQL_ADMINISTRATOR = "MySqlAdministrator"
    COSMOS_DB = "CosmosDB"
    STORAGE_ACCOUNT = "StorageAccount"


class ProvisioningState(str, Enum):
    """Lifecycle state of a tracked resource instance."""

    PENDING = "Pending"
    CREATING = "Creating"
    READY = "Ready"
    DELETING = "Deleting"
    DELETED = "Deleted"
    FAILED = "Failed"


GUID_PATTERN = r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"

SUBNET_ID_PATTERN = re.compile(
    r"/subscriptions/[^/]+/resourceGroups/[^/]+/providers/Microsoft\.Network"
    r"/virtualNetworks/[^/]+/subnets/[^/]+",
    re.IGNORECASE,
)

# States from which an instance no longer blocks the deletion of its dependencies
TERMINAL_STATES: frozenset[ProvisioningState] = frozenset({ProvisioningState.DELETED})

# Tag stamped on every created resource, holding the key of the owning instance
OWNER_TAG = "convergence-instance"


# =============================================================================
# Instance envelope
# =============================================================================


class DependencyReference(BaseModel):
    """Weak reference from one instance to another it requires.

    The referenced instance is validated, never owned: deleting the
    referencing instance does not cascade.
    """

    model_config = {"extra": "ignore", "populate_by_name": True, "frozen": True}

    role: Annotated[str, Field(min_length=1, max_length=64)]
    kind: ResourceKind
    name: Annotated[str, Field(min_length=1, max_length=260)]
    resource_group: str | None = Field(None, alias="resourceGroup")


class ResourceStatus(BaseModel):
    """Observed status of an instance, mutated once per reconciliation pass."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    state: ProvisioningState = ProvisioningState.PENDING
    remote_id: str | None = Field(None, alias="remoteId")
    last_error_kind: str | None = Field(None, alias="lastErrorKind")
    last_error_message: str | None = Field(None, alias="lastErrorMessage")
    last_reconciled: datetime | None = Field(None, alias="lastReconciled")
    retry_count: int = Field(0, ge=0, alias="retryCount")
    retrying_since: datetime | None = Field(None, alias="retryingSince")
    observed_spec_hash: str | None = Field(None, alias="observedSpecHash")
    failed_spec_hash: str | None = Field(None, alias="failedSpecHash")
    message: str | None = None


@dataclass(frozen=True)
class StatusDelta:
    """The status fields changed by one reconciliation pass."""

    changes: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def between(cls, before: ResourceStatus, after: ResourceStatus) -> StatusDelta:
        """Compute the delta that turns ``before`` into ``after``."""
        old = before.model_dump()
        new = after.model_dump()
        return cls(changes={key: value for key, value in new.items() if old.get(key) != value})

    @property
    def empty(self) -> bool:
        return not self.changes

    def apply(self, status: ResourceStatus) -> ResourceStatus:
        """Return a copy of ``status`` with this delta applied."""
        return status.model_copy(update=dict(self.changes))


@dataclass(frozen=True)
class ResourceAddress:
    """Location of a remote resource.

    ``parents`` maps reference roles to parent resource names, for example
    ``{"server": "sql-weu-01"}`` for a database.
    """

    subscription_id: str
    resource_group: str
    name: str
    parents: Mapping[str, str] = field(default_factory=dict)

    def parent(self, role: str) -> str:
        """Return the name of the parent referenced under ``role``.

        Raises:
            ValueError: If no reference with this role was declared.
        """
        try:
            return self.parents[role]
        except KeyError:
            raise ValueError(
                f"{self.name} requires a '{role}' reference in dependsOn"
            ) from None

    def __str__(self) -> str:
        segments = [self.subscription_id, self.resource_group]
        segments.extend(self.parents[role] for role in sorted(self.parents))
        segments.append(self.name)
        return "/".join(segments)


class ResourceInstance(BaseModel):
    """A declared remote resource plus its observed status."""

    model_config = {"extra": "ignore", "populate_by_name": True}

    kind: ResourceKind
    name: Annotated[str, Field(min_length=1, max_length=260)]
    resource_group: str | None = Field(None, alias="resourceGroup")
    subscription_id: str | None = Field(None, alias="subscriptionId")
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[DependencyReference] = Field(default_factory=list, alias="dependsOn")
    deletion_requested: bool = Field(False, alias="deletionRequested")
    status: ResourceStatus = Field(default_factory=ResourceStatus)

    @model_validator(mode="after")
    def default_resource_group(self) -> ResourceInstance:
        # A resource group is addressed by its own name
        if self.resource_group is None:
            if self.kind != ResourceKind.RESOURCE_GROUP:
                raise ValueError(f"resourceGroup is required for kind {self.kind.value}")
            self.resource_group = self.name
        return self

    @field_validator("depends_on")
    @classmethod
    def validate_unique_roles(cls, v: list[DependencyReference]) -> list[DependencyReference]:
        roles = [ref.role for ref in v]
        duplicates = sorted({role for role in roles if roles.count(role) > 1})
        if duplicates:
            raise ValueError(f"dependency roles must be unique, duplicated: {duplicates}")
        return v

    @property
    def key(self) -> str:
        return instance_key(self.kind, self.resource_group or self.name, self.name)

    @property
    def spec_hash(self) -> str:
        """SHA-256 of the canonical desired state.

        Covers attributes, references and the deletion request, so that
        requesting deletion of a Failed instance counts as a spec change.
        """
        canonical = json.dumps(
            {
                "kind": self.kind.value,
                "attributes": self.attributes,
                "deletionRequested": self.deletion_requested,
                "dependsOn": [
                    ref.model_dump(mode="json", by_alias=True) for ref in self.depends_on
                ],
            },
            sort_keys=True,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def reference_key(self, ref: DependencyReference) -> str:
        """Key of the instance targeted by ``ref``."""
        return instance_key(ref.kind, ref.resource_group or self.resource_group or "", ref.name)

    def dependency_keys(self) -> list[str]:
        return [self.reference_key(ref) for ref in self.depends_on]

    def owned_attributes(self) -> dict[str, Any]:
        """Attributes sent to the remote service, tagged with the owning instance.

        Kinds without tags, and malformed tags left for attribute validation
        to report, are passed through unchanged.
        """
        declared = self.attributes.get("tags") or {}
        if "tags" not in get_attributes_model(self.kind).model_fields or not isinstance(
            declared, Mapping
        ):
            return dict(self.attributes)
        tags = dict(declared)
        tags[OWNER_TAG] = self.key
        return {**self.attributes, "tags": tags}

    def owns(self, remote_tags: Mapping[str, str] | None) -> bool:
        """Whether a remote resource carries this instance's ownership tag."""
        return bool(remote_tags) and remote_tags.get(OWNER_TAG) == self.key

    def declares_other_subscription(self, subscription_id: str) -> bool:
        return bool(self.subscription_id) and (
            self.subscription_id.lower() != subscription_id.lower()
        )

    def address(self, default_subscription_id: str) -> ResourceAddress:
        """Build the remote address of this instance."""
        return ResourceAddress(
            subscription_id=self.subscription_id or default_subscription_id,
            resource_group=self.resource_group or self.name,
            name=self.name,
            parents={ref.role: ref.name for ref in self.depends_on},
        )


def instance_key(kind: ResourceKind, resource_group: str, name: str) -> str:
    return f"{kind.value}/{resource_group}/{name}"


# =============================================================================
# Per-kind attributes
# =============================================================================


class BaseAttributes(BaseModel):
    """Attributes shared by every kind."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    tags: dict[str, str] = Field(default_factory=dict)


class LocatedAttributes(BaseAttributes):
    location: Annotated[str, Field(min_length=1, max_length=64)]


class ResourceGroupAttributes(LocatedAttributes):
    """Resource group attributes."""


class EntraAdministrator(BaseModel):
    """Entra ID principal administering a SQL server."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    login: Annotated[str, Field(min_length=1, max_length=128)]
    sid: Annotated[str, Field(pattern=GUID_PATTERN)]
    tenant_id: Annotated[str, Field(pattern=GUID_PATTERN)] | None = Field(None, alias="tenantId")


class SqlServerAttributes(LocatedAttributes):
    """Logical SQL server attributes.

    Servers are always created with Entra ID only authentication, so no
    administrator password is accepted.
    """

    version: str = "12.0"
    administrator: EntraAdministrator
    minimal_tls_version: str = Field("1.2", alias="minimalTlsVersion")
    public_network_access: str = Field("Enabled", alias="publicNetworkAccess")

    @field_validator("minimal_tls_version")
    @classmethod
    def validate_tls(cls, v: str) -> str:
        valid = {"1.0", "1.1", "1.2", "1.3"}
        if v not in valid:
            raise ValueError(f"minimalTlsVersion must be one of {sorted(valid)}")
        return v

    @field_validator("public_network_access")
    @classmethod
    def validate_public_access(cls, v: str) -> str:
        if v not in {"Enabled", "Disabled"}:
            raise ValueError("publicNetworkAccess must be Enabled or Disabled")
        return v


class SqlDatabaseAttributes(LocatedAttributes):
    """SQL database attributes (parent reference role ``server``)."""

    sku_name: str = Field("S0", alias="skuName")
    sku_tier: str | None = Field(None, alias="skuTier")
    capacity: Annotated[int, Field(ge=1)] | None = None
    collation: str | None = None
    max_size_bytes: Annotated[int, Field(ge=1)] | None = Field(None, alias="maxSizeBytes")
    zone_redundant: bool = Field(False, alias="zoneRedundant")


class SqlReplicaAttributes(LocatedAttributes):
    """Geo-secondary database attributes.

    Reference roles: ``server`` (the secondary server) and ``source`` (the
    primary database).
    """

    sku_name: str | None = Field(None, alias="skuName")
    sku_tier: str | None = Field(None, alias="skuTier")


class SqlFirewallRuleAttributes(BaseAttributes):
    """Server-level firewall rule (parent reference role ``server``)."""

    start_ip_address: str = Field(alias="startIpAddress")
    end_ip_address: str = Field(alias="endIpAddress")

    @field_validator("start_ip_address", "end_ip_address")
    @classmethod
    def validate_ipv4(cls, v: str) -> str:
        try:
            ipaddress.IPv4Address(v)
        except ValueError as e:
            raise ValueError(f"not an IPv4 address: {v}") from e
        return v

    @model_validator(mode="after")
    def validate_range(self) -> SqlFirewallRuleAttributes:
        start = ipaddress.IPv4Address(self.start_ip_address)
        end = ipaddress.IPv4Address(self.end_ip_address)
        if start > end:
            raise ValueError("startIpAddress must not be greater than endIpAddress")
        return self


class SqlAdministratorAttributes(EntraAdministrator):
    """Entra ID administrator of a SQL server (parent reference role ``server``)."""


class SqlVirtualNetworkRuleAttributes(BaseAttributes):
    """Virtual network rule of a server (parent reference role ``server``)."""

    subnet_id: str = Field(alias="subnetId")
    ignore_missing_service_endpoint: bool = Field(
        False, alias="ignoreMissingServiceEndpoint"
    )

    @field_validator("subnet_id")
    @classmethod
    def validate_subnet_id(cls, v: str) -> str:
        if not SUBNET_ID_PATTERN.fullmatch(v):
            raise ValueError(
                "subnetId must look like /subscriptions/<id>/resourceGroups/<rg>"
                "/providers/Microsoft.Network/virtualNetworks/<vnet>/subnets/<subnet>"
            )
        return v


class MySqlServerAttributes(LocatedAttributes):
    """MySQL single server attributes.

    The server administrator password is generated for each create and never
    stored. Access is granted through a MySqlAdministrator (Entra ID).
    """

    sku_name: str = Field("GP_Gen5_2", alias="skuName")
    sku_tier: str | None = Field(None, alias="skuTier")
    version: str = "8.0"
    administrator_login: Annotated[str, Field(pattern=r"^[A-Za-z][A-Za-z0-9_]{0,15}$")] = Field(
        "mysqladmin", alias="administratorLogin"
    )
    ssl_enforcement: str = Field("Enabled", alias="sslEnforcement")
    minimal_tls_version: str = Field("TLS1_2", alias="minimalTlsVersion")
    public_network_access: str = Field("Enabled", alias="publicNetworkAccess")
    storage_mb: Annotated[int, Field(ge=5120, le=16777216)] = Field(5120, alias="storageMB")
    backup_retention_days: Annotated[int, Field(ge=7, le=35)] = Field(
        7, alias="backupRetentionDays"
    )
    geo_redundant_backup: bool = Field(False, alias="geoRedundantBackup")

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        valid = {"5.6", "5.7", "8.0"}
        if v not in valid:
            raise ValueError(f"version must be one of {sorted(valid)}")
        return v

    @field_validator("ssl_enforcement", "public_network_access")
    @classmethod
    def validate_switch(cls, v: str) -> str:
        if v not in {"Enabled", "Disabled"}:
            raise ValueError("must be Enabled or Disabled")
        return v

    @field_validator("minimal_tls_version")
    @classmethod
    def validate_tls(cls, v: str) -> str:
        valid = {"TLS1_0", "TLS1_1", "TLS1_2", "TLSEnforcementDisabled"}
        if v not in valid:
            raise ValueError(f"minimalTlsVersion must be one of {sorted(valid)}")
        return v


class MySqlReplicaAttributes(LocatedAttributes):
    """MySQL read replica.

    Reference role ``source`` names the MySqlServer replicated from.
    """

    sku_name: str | None = Field(None, alias="skuName")
    sku_tier: str | None = Field(None, alias="skuTier")


class MySqlDatabaseAttributes(BaseAttributes):
    """MySQL database (parent reference role ``server``)."""

    charset: str = "utf8"
    collation: str = "utf8_general_ci"


class MySqlFirewallRuleAttributes(SqlFirewallRuleAttributes):
    """Firewall rule of a MySQL server (parent reference role ``server``)."""


class MySqlVirtualNetworkRuleAttributes(SqlVirtualNetworkRuleAttributes):
    """Virtual network rule of a MySQL server (parent reference role ``server``)."""


class MySqlAdministratorAttributes(EntraAdministrator):
    """Entra ID administrator of a MySQL server (parent reference role ``server``)."""

    tenant_id: str = Field(alias="tenantId", pattern=GUID_PATTERN)


class CosmosDBAttributes(LocatedAttributes):
    """CosmosDB account attributes."""

    kind: str = "GlobalDocumentDB"
    offer_type: str = Field("Standard", alias="offerType")
    consistency_level: str = Field("Session", alias="consistencyLevel")
    enable_free_tier: bool = Field(False, alias="enableFreeTier")
    public_network_access: str = Field("Enabled", alias="publicNetworkAccess")

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        valid = {"GlobalDocumentDB", "MongoDB", "Parse"}
        if v not in valid:
            raise ValueError(f"kind must be one of {sorted(valid)}")
        return v

    @field_validator("offer_type")
    @classmethod
    def validate_offer_type(cls, v: str) -> str:
        # The service accepts a single offer type today
        valid = {"Standard"}
        if v not in valid:
            raise ValueError(f"offerType must be one of {sorted(valid)}")
        return v

    @field_validator("consistency_level")
    @classmethod
    def validate_consistency(cls, v: str) -> str:
        valid = {"Eventual", "Session", "BoundedStaleness", "Strong", "ConsistentPrefix"}
        if v not in valid:
            raise ValueError(f"consistencyLevel must be one of {sorted(valid)}")
        return v


class StorageAccountAttributes(LocatedAttributes):
    """Storage account attributes."""

    sku_name: str = Field("Standard_LRS", alias="skuName")
    kind: str = "StorageV2"
    access_tier: str | None = Field("Hot", alias="accessTier")
    https_only: bool = Field(True, alias="httpsOnly")
    minimum_tls_version: str = Field("TLS1_2", alias="minimumTlsVersion")

    @field_validator("sku_name")
    @classmethod
    def validate_sku(cls, v: str) -> str:
        valid = {
            "Standard_LRS",
            "Standard_GRS",
            "Standard_RAGRS",
            "Standard_ZRS",
            "Premium_LRS",
            "Premium_ZRS",
            "Standard_GZRS",
            "Standard_RAGZRS",
        }
        if v not in valid:
            raise ValueError(f"skuName must be one of {sorted(valid)}")
        return v

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        valid = {"Storage", "StorageV2", "BlobStorage", "FileStorage", "BlockBlobStorage"}
        if v not in valid:
            raise ValueError(f"kind must be one of {sorted(valid)}")
        return v

    @field_validator("access_tier")
    @classmethod
    def validate_access_tier(cls, v: str | None) -> str | None:
        if v is not None and v not in {"Hot", "Cool", "Cold", "Premium"}:
            raise ValueError("accessTier must be Hot, Cool, Cold or Premium")
        return v


ATTRIBUTE_MODELS: dict[ResourceKind, type[BaseModel]] = {
    ResourceKind.RESOURCE_GROUP: ResourceGroupAttributes,
    ResourceKind.SQL_SERVER: SqlServerAttributes,
    ResourceKind.SQL_DATABASE: SqlDatabaseAttributes,
    ResourceKind.SQL_FIREWALL_RULE: SqlFirewallRuleAttributes,
    ResourceKind.SQL_ADMINISTRATOR: SqlAdministratorAttributes,
    ResourceKind.SQL_REPLICA: SqlReplicaAttributes,
    ResourceKind.COSMOS_DB: CosmosDBAttributes,
    ResourceKind.STORAGE_ACCOUNT: StorageAccountAttributes,
    ResourceKind.SQL_VNET_RULE: SqlVirtualNetworkRuleAttributes,
    ResourceKind.MYSQL_SERVER: MySqlServerAttributes,
    ResourceKind.MYSQL_REPLICA: MySqlReplicaAttributes,
    ResourceKind.MYSQL_DATABASE: MySqlDatabaseAttributes,
    ResourceKind.MYSQL_FIREWALL_RULE: MySqlFirewallRuleAttributes,
    ResourceKind.MYSQL_VNET_RULE: MySqlVirtualNetworkRuleAttributes,
    ResourceKind.MYSQL_ADMINISTRATOR: MySqlAdministratorAttributes,
}


def get_attributes_model(kind: ResourceKind) -> type[BaseModel]:
    """Get the attribute model for a kind.

    Raises:
        ValueError: If the kind has no attribute model.
    """
    model = ATTRIBUTE_MODELS.get(kind)
    if model is None:
        raise ValueError(f"Unknown kind '{kind}'. Valid kinds: {[k.value for k in ATTRIBUTE_MODELS]}")
    return model
