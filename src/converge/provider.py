"""Provider interface consumed by the executor.

A provider owns the kind schemas it can manage and implements four verbs per
kind. Every failure must be classified:

- TransientProviderError: throttling, timeouts, 5xx. Retried by the executor.
- PermanentProviderError: anything a retry will not fix.
- ResourceNotFound: the object behind an external id no longer exists.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .models import KindSchema


class ErrorClass(str, Enum):
    """Classification of a provider failure."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ProviderError(Exception):
    """Base class for classified provider failures."""

    error_class: ErrorClass = ErrorClass.PERMANENT


class TransientProviderError(ProviderError):
    """Failure that may succeed when retried."""

    error_class = ErrorClass.TRANSIENT


class PermanentProviderError(ProviderError):
    """Failure that will not succeed when retried."""

    error_class = ErrorClass.PERMANENT


class ResourceNotFound(PermanentProviderError):
    """The remote object does not exist."""

    pass


class Provider(ABC):
    """Back-end that creates, reads, updates and destroys resources.

    Implementations are called from worker threads, one call per resource at a
    time, and must not keep per-call state on the instance.
    """

    name: str = "provider"

    @property
    @abstractmethod
    def schemas(self) -> Mapping[str, KindSchema]:
        """Kind schemas this provider manages, keyed by kind."""

    @abstractmethod
    def create(self, kind: str, attributes: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        """Create a resource.

        Returns:
            Tuple of (external_id, attributes as applied including computed ones).
        """

    @abstractmethod
    def read(self, kind: str, external_id: str) -> dict[str, Any]:
        """Read the live attributes of a resource.

        Raises:
            ResourceNotFound: If the resource no longer exists.
        """

    @abstractmethod
    def update(
        self, kind: str, external_id: str, attributes: dict[str, Any]
    ) -> dict[str, Any]:
        """Update a resource in place and return its new attributes."""

    @abstractmethod
    def destroy(self, kind: str, external_id: str) -> None:
        """Destroy a resource."""
