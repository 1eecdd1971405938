"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

import pytest

# Add src and tests to path so convergence, azure_mock and factories import
# without an editable install
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from azure_mock import (  # noqa: E402
    MockAzureState,
    MockCosmosDBClient,
    MockMySqlClient,
    MockResourceClient,
    MockSqlClient,
    MockStorageClient,
)
from factories import RESOURCE_GROUP  # noqa: E402

from convergence.managers.cosmosdb import CosmosDBManager  # noqa: E402
from convergence.managers.mysql import (  # noqa: E402
    MySqlAdministratorManager,
    MySqlDatabaseManager,
    MySqlFirewallRuleManager,
    MySqlReplicaManager,
    MySqlServerManager,
    MySqlVirtualNetworkRuleManager,
)
from convergence.managers.resource_group import ResourceGroupManager  # noqa: E402
from convergence.managers.sql import (  # noqa: E402
    SqlAdministratorManager,
    SqlDatabaseManager,
    SqlFirewallRuleManager,
    SqlReplicaManager,
    SqlServerManager,
    SqlVirtualNetworkRuleManager,
)
from convergence.managers.storage import StorageAccountManager  # noqa: E402
from convergence.models import ResourceKind  # noqa: E402
from convergence.operations import OperationTracker  # noqa: E402


@pytest.fixture
def state() -> MockAzureState:
    """Mock Azure state holding the default resource group."""
    state = MockAzureState(polls_until_done=1)
    state.add_resource_group(RESOURCE_GROUP)
    return state


@pytest.fixture
def tracker() -> OperationTracker:
    return OperationTracker(poll_interval=0.01, max_poll_interval=0.02, timeout=5)


@pytest.fixture
def managers(state: MockAzureState, tracker: OperationTracker) -> dict[ResourceKind, Any]:
    """One manager per kind, wired to mock clients sharing ``state``."""
    sql = MockSqlClient(state)
    mysql = MockMySqlClient(state)
    return {
        ResourceKind.RESOURCE_GROUP: ResourceGroupManager(MockResourceClient(state), tracker),
        ResourceKind.SQL_SERVER: SqlServerManager(sql, tracker),
        ResourceKind.SQL_DATABASE: SqlDatabaseManager(sql, tracker),
        ResourceKind.SQL_REPLICA: SqlReplicaManager(sql, tracker),
        ResourceKind.SQL_FIREWALL_RULE: SqlFirewallRuleManager(sql, tracker),
        ResourceKind.SQL_ADMINISTRATOR: SqlAdministratorManager(sql, tracker),
        ResourceKind.SQL_VNET_RULE: SqlVirtualNetworkRuleManager(sql, tracker),
        ResourceKind.MYSQL_SERVER: MySqlServerManager(mysql, tracker),
        ResourceKind.MYSQL_REPLICA: MySqlReplicaManager(mysql, tracker),
        ResourceKind.MYSQL_DATABASE: MySqlDatabaseManager(mysql, tracker),
        ResourceKind.MYSQL_FIREWALL_RULE: MySqlFirewallRuleManager(mysql, tracker),
        ResourceKind.MYSQL_VNET_RULE: MySqlVirtualNetworkRuleManager(mysql, tracker),
        ResourceKind.MYSQL_ADMINISTRATOR: MySqlAdministratorManager(mysql, tracker),
        ResourceKind.COSMOS_DB: CosmosDBManager(MockCosmosDBClient(state), tracker),
        ResourceKind.STORAGE_ACCOUNT: StorageAccountManager(MockStorageClient(state), tracker),
    }
