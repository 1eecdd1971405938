"""Azure SDK mocks for integration testing.

Mock implementations of the Azure management clients used by the resource
managers, so the convergence engine can be tested without Azure
connectivity.

Key Features:
- In-memory state for resource groups, SQL, MySQL, CosmosDB and storage resources
- Long-running operations that complete after a configurable number of polls
- Error injection per operation and resource name
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext, http_error

    with MockAzureContext(resource_groups=["rg-app"]) as ctx:
        ctx.state.inject_error("begin_create_or_update", "sql-app", http_error(429))
        ...
        assert ctx.state.call_count("begin_create_or_update", "sql-app") == 1
"""

from .context import MockAzureContext, mock_azure_context
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import (
    DEFAULT_SUBSCRIPTION_ID,
    MockAzureState,
    MockCosmosDBClient,
    MockLROPoller,
    MockMySqlClient,
    MockRemoteResource,
    MockResourceClient,
    MockSqlClient,
    MockStorageClient,
    http_error,
    not_found,
)

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "MockAzureContext",
    "MockAzureState",
    "MockCosmosDBClient",
    "MockLROPoller",
    "MockManagedIdentityCredential",
    "MockMySqlClient",
    "MockRemoteResource",
    "MockResourceClient",
    "MockSqlClient",
    "MockStorageClient",
    "create_mock_credential",
    "http_error",
    "mock_azure_context",
    "not_found",
]
