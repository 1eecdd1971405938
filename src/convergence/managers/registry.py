"""Manager registry and construction of the Azure SDK clients."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from typing import Any

from azure.core.credentials import TokenCredential
from azure.mgmt.cosmosdb import CosmosDBManagementClient
from azure.mgmt.rdbms.mysql import MySQLManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.storage import StorageManagementClient

from ..config import Config
from ..errors import ConvergenceError
from ..models import ResourceKind
from ..operations import OperationTracker
from .base import ResourceManager
from .cosmosdb import CosmosDBManager
from .mysql import (
    MySqlAdministratorManager,
    MySqlDatabaseManager,
    MySqlFirewallRuleManager,
    MySqlReplicaManager,
    MySqlServerManager,
    MySqlVirtualNetworkRuleManager,
)
from .resource_group import ResourceGroupManager
from .sql import (
    SqlAdministratorManager,
    SqlDatabaseManager,
    SqlFirewallRuleManager,
    SqlReplicaManager,
    SqlServerManager,
    SqlVirtualNetworkRuleManager,
)
from .storage import StorageAccountManager

logger = logging.getLogger(__name__)


class UnsupportedKindError(ConvergenceError):
    """Raised when no manager is registered for a kind."""

    pass


class ManagerRegistry:
    """Maps each resource kind to its manager."""

    def __init__(self, managers: Iterable[ResourceManager] = ()) -> None:
        self._managers: dict[ResourceKind, ResourceManager] = {}
        for manager in managers:
            self.register(manager)

    def register(self, manager: ResourceManager) -> None:
        """Register a manager.

        Raises:
            ValueError: If a manager is already registered for the kind.
        """
        if manager.kind in self._managers:
            raise ValueError(f"A manager for {manager.kind.value} is already registered")
        self._managers[manager.kind] = manager

    def get(self, kind: ResourceKind) -> ResourceManager:
        """Return the manager for ``kind``.

        Raises:
            UnsupportedKindError: If the kind has no manager.
        """
        try:
            return self._managers[kind]
        except KeyError:
            raise UnsupportedKindError(f"No manager registered for kind {kind.value}") from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._managers

    def __iter__(self) -> Iterator[ResourceKind]:
        return iter(self._managers)

    def __len__(self) -> int:
        return len(self._managers)


def build_registry(
    config: Config,
    credential: TokenCredential,
    tracker: OperationTracker,
) -> ManagerRegistry:
    """Construct the SDK clients and a manager for every supported kind.

    All clients share the credential, the configured Resource Manager
    endpoint and the client user agent.
    """
    endpoint = config.resource_manager_endpoint.rstrip("/")
    client_kwargs: dict[str, Any] = {
        "base_url": endpoint,
        "credential_scopes": [f"{endpoint}/.default"],
        "user_agent": config.user_agent,
    }
    subscription_id = config.subscription_id

    resource_client = ResourceManagementClient(credential, subscription_id, **client_kwargs)
    sql_client = SqlManagementClient(credential, subscription_id, **client_kwargs)
    mysql_client = MySQLManagementClient(credential, subscription_id, **client_kwargs)
    cosmos_client = CosmosDBManagementClient(credential, subscription_id, **client_kwargs)
    storage_client = StorageManagementClient(credential, subscription_id, **client_kwargs)

    registry = ManagerRegistry(
        [
            ResourceGroupManager(resource_client, tracker),
            SqlServerManager(sql_client, tracker),
            SqlDatabaseManager(sql_client, tracker),
            SqlFirewallRuleManager(sql_client, tracker),
            SqlAdministratorManager(sql_client, tracker),
            SqlReplicaManager(sql_client, tracker),
            SqlVirtualNetworkRuleManager(sql_client, tracker),
            MySqlServerManager(mysql_client, tracker),
            MySqlReplicaManager(mysql_client, tracker),
            MySqlDatabaseManager(mysql_client, tracker),
            MySqlFirewallRuleManager(mysql_client, tracker),
            MySqlVirtualNetworkRuleManager(mysql_client, tracker),
            MySqlAdministratorManager(mysql_client, tracker),
            CosmosDBManager(cosmos_client, tracker),
            StorageAccountManager(storage_client, tracker),
        ]
    )
    logger.info(
        "Resource managers registered",
        extra={
            "kinds": [kind.value for kind in registry],
            "endpoint": endpoint,
            "user_agent": config.user_agent,
        },
    )
    return registry
