"""Azure API Mock for provider testing.

This module provides a mock implementation of the Azure Resource Manager
APIs the Azure provider calls, so it can be tested without Azure connectivity.

Key Features:
- In-memory resource groups and by-id resources
- Long-running operation pollers that complete immediately
- HTTP error injection for transient/permanent classification tests
- Managed Identity simulation

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        provider = AzureProvider(ctx.subscription_id)
        ...
        assert ctx.state.calls[-1] == "resource_groups.create_or_update"
"""

from .context import DEFAULT_SUBSCRIPTION_ID, MockAzureContext
from .credential import MockManagedIdentityCredential, create_mock_credential
from .resources import MockResourceClient, MockResourceState

__all__ = [
    "DEFAULT_SUBSCRIPTION_ID",
    "MockAzureContext",
    "MockManagedIdentityCredential",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
]
