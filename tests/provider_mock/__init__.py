"""In-memory provider for engine tests.

Key Features:
- Kinds: resource_group, storage_account, virtual_machine, dns_record
- External ids are unique per instance, so a replace yields a new id
- Fault injection keyed by the resource's ``name`` attribute
- Call log and peak-concurrency tracking for scheduling assertions

Usage:
    from provider_mock import MockProvider

    provider = MockProvider()
    provider.inject("sa-one", TransientProviderError, times=2)
"""

from .provider import MOCK_SCHEMAS, MockCall, MockProvider, declare

__all__ = ["MOCK_SCHEMAS", "MockCall", "MockProvider", "declare"]
