"""Declaration file loading with validation.

A declaration file is YAML with a top-level ``resources`` list:

```yaml
resources:
  - kind: resource_group
    name: rg
    attributes:
      name: rg-getting-started
      location: westeurope
  - kind: storage_account
    name: sa
    attributes:
      name: stgettingstarted001
      resource_group_name: ${resource_group.rg.name}
      location: ${resource_group.rg.location}
    lifecycle:
      ignore_changes: [tags]
```

A directory is loaded as every ``*.yaml``/``*.yml`` file in name order,
concatenated. Declaration order across files is the planner's tie-break.

SECURITY: File sizes are checked before reading.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from .config import MAX_CONFIGURATION_FILE_SIZE_BYTES
from .models import KindSchema, Lifecycle, Resource

logger = logging.getLogger(__name__)

DECLARATION_SUFFIXES = (".yaml", ".yml")


class ConfigurationLoadError(Exception):
    """Raised when a declaration file cannot be read or parsed."""

    pass


class ResourceDeclaration(BaseModel):
    """One entry of the ``resources`` list."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: str
    name: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")
    lifecycle: Lifecycle = Field(default_factory=Lifecycle)


class DeclarationFile(BaseModel):
    """Top-level shape of a declaration file."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)


def _declaration_files(path: Path) -> list[Path]:
    if path.is_dir():
        files = sorted(p for p in path.iterdir() if p.suffix in DECLARATION_SUFFIXES)
        if not files:
            raise ConfigurationLoadError(f"No declaration files found in {path}")
        return files
    if not path.exists():
        raise ConfigurationLoadError(f"Declaration file not found: {path}")
    return [path]


def _read_declarations(path: Path) -> DeclarationFile:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise ConfigurationLoadError(f"Failed to stat declaration file {path}: {e}") from e

    if file_size > MAX_CONFIGURATION_FILE_SIZE_BYTES:
        raise ConfigurationLoadError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_CONFIGURATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationLoadError(f"Failed to read declaration file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise ConfigurationLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return DeclarationFile()
    if not isinstance(raw_data, dict):
        raise ConfigurationLoadError(f"Declaration file must contain a YAML mapping: {path}")

    try:
        return DeclarationFile.model_validate(raw_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise ConfigurationLoadError(f"Validation failed for {path}:\n{error_list}") from e


def load_configuration(path: Path, schemas: Mapping[str, KindSchema]) -> list[Resource]:
    """Load declared resources and validate them against kind schemas.

    Args:
        path: Declaration file, or directory of declaration files.
        schemas: Kind schemas of the active provider.

    Returns:
        Resources in declaration order.

    Raises:
        ConfigurationLoadError: If a file cannot be read or has the wrong shape.
        SchemaViolation: If a resource does not conform to its kind's schema.
    """
    resources: list[Resource] = []
    for file_path in _declaration_files(Path(path)):
        declarations = _read_declarations(file_path)
        for declaration in declarations.resources:
            resources.append(
                Resource.declare(
                    declaration.kind,
                    declaration.name,
                    declaration.attributes,
                    schemas,
                    depends_on=declaration.depends_on,
                    lifecycle=declaration.lifecycle,
                )
            )
        logger.info(
            "Loaded declarations from %s",
            file_path,
            extra={"resource_count": len(declarations.resources)},
        )
    return resources
