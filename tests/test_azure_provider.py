"""Tests for the Azure Resource Manager provider."""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from azure_mock import DEFAULT_SUBSCRIPTION_ID, MockAzureContext, create_mock_credential
from converge.azure_provider import (
    SCHEMAS,
    AzureProvider,
    CredentialPolicyError,
    get_credential,
)
from converge.config import ConfigurationError, EngineConfig
from converge.models import Resource
from converge.provider import (
    ErrorClass,
    PermanentProviderError,
    ResourceNotFound,
    TransientProviderError,
)

RG_ATTRIBUTES = {"name": "rg-demo", "location": "westeurope", "tags": {"env": "dev"}}


def storage_attributes(**overrides: object) -> dict[str, object]:
    declared = Resource.declare(
        "storage_account",
        "sa",
        {"name": "stdemo001", "resource_group_name": "rg-demo", "location": "westeurope"},
        SCHEMAS,
    ).attributes
    return {**declared, **overrides}


class TestGetCredential:
    """Tests for managed-identity credential selection."""

    def test_refuses_client_secret(self) -> None:
        """Test secrets in the environment are refused."""
        with patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "hunter2"}):
            with pytest.raises(CredentialPolicyError, match="AZURE_CLIENT_SECRET"):
                get_credential()

    def test_user_assigned_identity(self) -> None:
        """Test the client id selects a user-assigned identity."""
        with patch.dict(os.environ, {}, clear=True):
            with MockAzureContext() as ctx:
                get_credential("client-123")

        assert ctx.credentials[0].client_id == "client-123"


class TestFromConfig:
    """Tests for building the provider from configuration."""

    def test_requires_subscription(self) -> None:
        """Test the subscription id is mandatory."""
        with pytest.raises(ConfigurationError, match="AZURE_SUBSCRIPTION_ID"):
            AzureProvider.from_config(EngineConfig())

    def test_passes_client_id(self) -> None:
        """Test AZURE_CLIENT_ID reaches the credential."""
        config = EngineConfig(subscription_id=DEFAULT_SUBSCRIPTION_ID, client_id="uami")
        with patch.dict(os.environ, {}, clear=True):
            with MockAzureContext() as ctx:
                AzureProvider.from_config(config)

        assert ctx.credentials[0].client_id == "uami"


class TestResourceGroups:
    """Tests for the resource_group kind."""

    def test_create_read_update_destroy(self) -> None:
        """Test the full lifecycle against the mock ARM API."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())

            external_id, attributes = provider.create("resource_group", dict(RG_ATTRIBUTES))
            assert external_id == f"/subscriptions/{ctx.subscription_id}/resourceGroups/rg-demo"
            assert attributes == {**RG_ATTRIBUTES, "id": external_id}

            assert provider.read("resource_group", external_id) == attributes

            updated = provider.update(
                "resource_group", external_id, {**RG_ATTRIBUTES, "tags": {"env": "prod"}}
            )
            assert updated["tags"] == {"env": "prod"}

            provider.destroy("resource_group", external_id)
            assert ctx.state.resource_groups == {}

    def test_read_missing(self) -> None:
        """Test 404s become ResourceNotFound."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())

            with pytest.raises(ResourceNotFound):
                provider.read("resource_group", ctx.state.group_id("gone"))


class TestStorageAccounts:
    """Tests for the storage_account kind."""

    def test_create_maps_attributes(self) -> None:
        """Test SKU, kind and endpoint mapping."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())
            provider.create("resource_group", dict(RG_ATTRIBUTES))

            external_id, attributes = provider.create("storage_account", storage_attributes())

            assert external_id.endswith("/providers/Microsoft.Storage/storageAccounts/stdemo001")
            assert attributes["account_tier"] == "Standard"
            assert attributes["account_replication_type"] == "LRS"
            assert attributes["account_kind"] == "StorageV2"
            assert attributes["resource_group_name"] == "rg-demo"
            assert attributes["primary_blob_endpoint"] == "https://stdemo001.blob.core.windows.net/"

            stored = ctx.state.resources[external_id.lower()]
            assert stored.sku.name == "Standard_LRS"
            assert stored.properties["minimumTlsVersion"] == "TLS1_2"

    def test_update_replication(self) -> None:
        """Test mutable SKU parts are updated in place."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())
            provider.create("resource_group", dict(RG_ATTRIBUTES))
            external_id, _ = provider.create("storage_account", storage_attributes())

            updated = provider.update(
                "storage_account", external_id, storage_attributes(account_replication_type="GRS")
            )

            assert updated["account_replication_type"] == "GRS"
            assert provider.read("storage_account", external_id) == updated

    def test_destroy_missing(self) -> None:
        """Test deleting a missing account raises ResourceNotFound."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())

            with pytest.raises(ResourceNotFound):
                provider.destroy(
                    "storage_account",
                    f"/subscriptions/{ctx.subscription_id}/resourceGroups/rg"
                    "/providers/Microsoft.Storage/storageAccounts/gone",
                )


class TestErrorClassification:
    """Tests for mapping Azure errors onto provider error classes."""

    @pytest.mark.parametrize("status_code", [408, 409, 429, 500, 503])
    def test_transient_status(self, status_code: int) -> None:
        """Test throttling and server errors are transient."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())
            ctx.state.fail_next(status_code)

            with pytest.raises(TransientProviderError) as exc_info:
                provider.create("resource_group", dict(RG_ATTRIBUTES))

        assert exc_info.value.error_class == ErrorClass.TRANSIENT

    @pytest.mark.parametrize("status_code", [400, 403])
    def test_permanent_status(self, status_code: int) -> None:
        """Test client errors are permanent."""
        with MockAzureContext() as ctx:
            provider = AzureProvider(ctx.subscription_id, credential=create_mock_credential())
            ctx.state.fail_next(status_code)

            with pytest.raises(PermanentProviderError) as exc_info:
                provider.create("resource_group", dict(RG_ATTRIBUTES))

        assert f"HTTP {status_code}" in str(exc_info.value)

    def test_unsupported_kind(self) -> None:
        """Test kinds outside the schema registry."""
        provider = AzureProvider(DEFAULT_SUBSCRIPTION_ID, credential=create_mock_credential())

        with pytest.raises(PermanentProviderError, match="Unsupported kind"):
            provider.create("queue", {"name": "q"})
