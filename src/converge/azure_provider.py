"""Azure Resource Manager provider using the Azure SDK for Python.

Manages the two kinds the getting-started configuration declares:

- resource_group:   Microsoft.Resources/resourceGroups
- storage_account:  Microsoft.Storage/storageAccounts (via the generic
                    resources-by-id API, so no extra management SDK is needed)

External ids are full ARM resource ids.

ERROR CLASSIFICATION:
- 404                                  -> ResourceNotFound
- 408, 409 (conflicting operation), 429, 5xx, connection errors -> transient
- any other Azure error                -> permanent

SECURITY: Credentials come from managed identity only; secrets in the
environment are refused before any credential is built.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Mapping
from typing import Any, TypeVar

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.identity import ManagedIdentityCredential
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource, ResourceGroup, Sku

from .config import ConfigurationError, EngineConfig
from .models import AttributeSpec, AttributeType, KindSchema
from .provider import (
    PermanentProviderError,
    Provider,
    ResourceNotFound,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

STORAGE_API_VERSION = "2023-01-01"

TRANSIENT_STATUS_CODES = frozenset({408, 409, 429, 500, 502, 503, 504})

# Environment variables that indicate secret-based authentication
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class CredentialPolicyError(Exception):
    """Raised when secret-based credentials are present in the environment."""

    pass


def get_credential(client_id: str | None = None) -> ManagedIdentityCredential:
    """Managed identity credential, refusing secrets in the environment.

    Raises:
        CredentialPolicyError: If credential secrets are set in the environment.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secret-based credential found in environment",
                extra={"env_var": env_var},
            )
            raise CredentialPolicyError(
                f"{env_var} is set; only managed identity authentication is supported"
            )

    if client_id:
        return ManagedIdentityCredential(client_id=client_id)
    return ManagedIdentityCredential()


SCHEMAS: dict[str, KindSchema] = {
    "resource_group": KindSchema(
        kind="resource_group",
        attributes={
            "name": AttributeSpec(required=True, immutable=True),
            "location": AttributeSpec(required=True, immutable=True, case_insensitive=True),
            "tags": AttributeSpec(type=AttributeType.MAP, default={}),
            "id": AttributeSpec(computed=True),
        },
    ),
    "storage_account": KindSchema(
        kind="storage_account",
        attributes={
            "name": AttributeSpec(required=True, immutable=True),
            "resource_group_name": AttributeSpec(required=True, immutable=True),
            "location": AttributeSpec(required=True, immutable=True, case_insensitive=True),
            "account_tier": AttributeSpec(default="Standard", immutable=True),
            "account_replication_type": AttributeSpec(default="LRS"),
            "account_kind": AttributeSpec(default="StorageV2", immutable=True),
            "tags": AttributeSpec(type=AttributeType.MAP, default={}),
            "id": AttributeSpec(computed=True),
            "primary_blob_endpoint": AttributeSpec(computed=True),
        },
    ),
}


def _segment(resource_id: str, key: str) -> str:
    """Value following ``key`` in an ARM resource id (case-insensitive key)."""
    parts = resource_id.strip("/").split("/")
    for index, part in enumerate(parts[:-1]):
        if part.lower() == key.lower():
            return parts[index + 1]
    raise PermanentProviderError(f"Resource id has no '{key}' segment: {resource_id}")


class AzureProvider(Provider):
    """Provider backed by Azure Resource Manager."""

    name = "azure"

    def __init__(
        self,
        subscription_id: str,
        *,
        credential: Any | None = None,
        client: ResourceManagementClient | None = None,
    ) -> None:
        self._subscription_id = subscription_id
        self._credential = credential
        self._client = client

    @classmethod
    def from_config(cls, config: EngineConfig) -> AzureProvider:
        if not config.subscription_id:
            raise ConfigurationError("AZURE_SUBSCRIPTION_ID is required for the Azure provider")
        return cls(config.subscription_id, credential=get_credential(config.client_id))

    @property
    def schemas(self) -> Mapping[str, KindSchema]:
        return SCHEMAS

    @property
    def client(self) -> ResourceManagementClient:
        if self._client is None:
            if self._credential is None:
                self._credential = get_credential()
            self._client = ResourceManagementClient(
                credential=self._credential,
                subscription_id=self._subscription_id,
            )
        return self._client

    def create(self, kind: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        match kind:
            case "resource_group":
                result = self._put_resource_group(attributes)
            case "storage_account":
                result = self._put_storage_account(self._storage_id(attributes), attributes)
            case _:
                raise PermanentProviderError(f"Unsupported kind: {kind}")
        return result["id"], result

    def read(self, kind: str, external_id: str) -> dict[str, Any]:
        match kind:
            case "resource_group":
                name = _segment(external_id, "resourceGroups")
                group = self._call(
                    "read resource group", lambda: self.client.resource_groups.get(name)
                )
                return _resource_group_attributes(group)
            case "storage_account":
                resource = self._call(
                    "read storage account",
                    lambda: self.client.resources.get_by_id(external_id, STORAGE_API_VERSION),
                )
                return _storage_account_attributes(resource)
            case _:
                raise PermanentProviderError(f"Unsupported kind: {kind}")

    def update(
        self, kind: str, external_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        # ARM PUT is create-or-update; immutable fields never reach here
        match kind:
            case "resource_group":
                return self._put_resource_group(attributes)
            case "storage_account":
                return self._put_storage_account(external_id, attributes)
            case _:
                raise PermanentProviderError(f"Unsupported kind: {kind}")

    def destroy(self, kind: str, external_id: str) -> None:
        match kind:
            case "resource_group":
                name = _segment(external_id, "resourceGroups")
                self._call(
                    "delete resource group",
                    lambda: self.client.resource_groups.begin_delete(name).result(),
                )
            case "storage_account":
                self._call(
                    "delete storage account",
                    lambda: self.client.resources.begin_delete_by_id(
                        external_id, STORAGE_API_VERSION
                    ).result(),
                )
            case _:
                raise PermanentProviderError(f"Unsupported kind: {kind}")

    def _storage_id(self, attributes: Mapping[str, Any]) -> str:
        return (
            f"/subscriptions/{self._subscription_id}"
            f"/resourceGroups/{attributes['resource_group_name']}"
            f"/providers/Microsoft.Storage/storageAccounts/{attributes['name']}"
        )

    def _put_resource_group(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        parameters = ResourceGroup(
            location=attributes["location"],
            tags=attributes.get("tags") or {},
        )
        group = self._call(
            "put resource group",
            lambda: self.client.resource_groups.create_or_update(attributes["name"], parameters),
        )
        return _resource_group_attributes(group)

    def _put_storage_account(
        self, resource_id: str, attributes: Mapping[str, Any]
    ) -> dict[str, Any]:
        parameters = GenericResource(
            location=attributes["location"],
            tags=attributes.get("tags") or {},
            kind=attributes["account_kind"],
            sku=Sku(
                name=f"{attributes['account_tier']}_{attributes['account_replication_type']}"
            ),
            properties={"minimumTlsVersion": "TLS1_2"},
        )
        resource = self._call(
            "put storage account",
            lambda: self.client.resources.begin_create_or_update_by_id(
                resource_id, STORAGE_API_VERSION, parameters
            ).result(),
        )
        return _storage_account_attributes(resource)

    def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run an SDK call and classify its failure."""
        try:
            return func()
        except ResourceNotFoundError as e:
            raise ResourceNotFound(f"{operation}: {e.message}") from e
        except HttpResponseError as e:
            if e.status_code in TRANSIENT_STATUS_CODES:
                raise TransientProviderError(
                    f"{operation}: HTTP {e.status_code}: {e.message}"
                ) from e
            raise PermanentProviderError(f"{operation}: HTTP {e.status_code}: {e.message}") from e
        except (ServiceRequestError, ServiceResponseError) as e:
            raise TransientProviderError(f"{operation}: {e}") from e
        except AzureError as e:
            raise PermanentProviderError(f"{operation}: {e}") from e


def _resource_group_attributes(group: Any) -> dict[str, Any]:
    return {
        "name": group.name,
        "location": group.location,
        "tags": dict(group.tags or {}),
        "id": group.id,
    }


def _storage_account_attributes(resource: Any) -> dict[str, Any]:
    tier, _, replication = (resource.sku.name if resource.sku else "").partition("_")
    properties = resource.properties or {}
    endpoints = properties.get("primaryEndpoints") or {}
    return {
        "name": resource.name,
        "resource_group_name": _segment(resource.id, "resourceGroups"),
        "location": resource.location,
        "account_tier": tier or None,
        "account_replication_type": replication or None,
        "account_kind": resource.kind,
        "tags": dict(resource.tags or {}),
        "id": resource.id,
        "primary_blob_endpoint": endpoints.get("blob"),
    }
