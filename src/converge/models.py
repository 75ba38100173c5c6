"""Resource model: identities, attribute values and kind schemas.

A declared resource is identified by ``(kind, name)`` and carries an ordered
mapping of attributes. Attribute values form a closed variant:

- scalars (str, int, float, bool, None)
- lists and nested mappings of values
- ``Reference`` to another resource's identity or attribute
- ``Template``: a string with embedded ``${kind.name.attribute}`` tokens

References are what the graph builder turns into edges. They are resolved
only once the referenced resource's action has completed.

EXAMPLE:
```yaml
- kind: storage_account
  name: sa
  attributes:
    name: stdemo001
    resource_group_name: ${resource_group.rg.name}
```
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

VALID_KIND_PATTERN = r"^[a-z][a-z0-9_]*$"
VALID_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_-]*$"

# ${kind.name} or ${kind.name.attribute}
REFERENCE_TOKEN = re.compile(r"\$\{([^}]*)\}")


class SchemaViolation(Exception):
    """Raised when a resource declaration is malformed or incomplete."""

    def __init__(self, message: str, identity: ResourceId | None = None) -> None:
        self.identity = identity
        if identity is not None:
            message = f"{identity}: {message}"
        super().__init__(message)


@dataclass(frozen=True, order=True)
class ResourceId:
    """Identity of a resource within one configuration."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}.{self.name}"

    @classmethod
    def parse(cls, value: str) -> ResourceId:
        """Parse ``kind.name`` into an identity.

        Raises:
            SchemaViolation: If the string is not a valid identity.
        """
        kind, _, name = value.partition(".")
        if not re.match(VALID_KIND_PATTERN, kind) or not re.match(VALID_NAME_PATTERN, name):
            raise SchemaViolation(f"Invalid resource identity '{value}', expected 'kind.name'")
        return cls(kind=kind, name=name)


@dataclass(frozen=True)
class Reference:
    """Reference to another resource, or to one of its attributes.

    A reference without an attribute resolves to the target's external id.
    """

    target: ResourceId
    attribute: str | None = None

    def __str__(self) -> str:
        if self.attribute is None:
            return f"${{{self.target}}}"
        return f"${{{self.target}.{self.attribute}}}"

    @classmethod
    def parse(cls, token: str) -> Reference:
        parts = token.strip().split(".")
        if len(parts) not in (2, 3):
            raise SchemaViolation(f"Invalid reference '${{{token}}}'")
        target = ResourceId.parse(f"{parts[0]}.{parts[1]}")
        return cls(target=target, attribute=parts[2] if len(parts) == 3 else None)


@dataclass(frozen=True)
class Template:
    """String with embedded references, e.g. ``"${resource_group.rg.name}-logs"``."""

    parts: tuple[str | Reference, ...]

    def __str__(self) -> str:
        return "".join(str(part) for part in self.parts)


class _Unknown:
    """Placeholder for a value only known after apply."""

    _instance: _Unknown | None = None

    def __new__(cls) -> _Unknown:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "(known after apply)"


UNKNOWN = _Unknown()


def parse_value(value: Any) -> Any:
    """Convert a raw declared value into the attribute value variant.

    Strings containing ``${...}`` tokens become a ``Reference`` (whole string
    is one token) or a ``Template``.

    Raises:
        SchemaViolation: If the value has an unsupported type.
    """
    match value:
        case Reference() | Template():
            return value
        case bool() | int() | float() | None:
            return value
        case str():
            return _parse_string(value)
        case Mapping():
            parsed: dict[str, Any] = {}
            for key, item in value.items():
                if not isinstance(key, str):
                    raise SchemaViolation(f"Mapping keys must be strings, got {key!r}")
                parsed[key] = parse_value(item)
            return parsed
        case list() | tuple():
            return [parse_value(item) for item in value]
        case _:
            raise SchemaViolation(f"Unsupported attribute value type: {type(value).__name__}")


def _parse_string(value: str) -> str | Reference | Template:
    matches = list(REFERENCE_TOKEN.finditer(value))
    if not matches:
        return value
    if len(matches) == 1 and matches[0].span() == (0, len(value)):
        return Reference.parse(matches[0].group(1))

    parts: list[str | Reference] = []
    position = 0
    for match in matches:
        if match.start() > position:
            parts.append(value[position : match.start()])
        parts.append(Reference.parse(match.group(1)))
        position = match.end()
    if position < len(value):
        parts.append(value[position:])
    return Template(parts=tuple(parts))


def iter_references(value: Any) -> Iterator[Reference]:
    """Yield every reference embedded in an attribute value."""
    match value:
        case Reference():
            yield value
        case Template(parts=parts):
            for part in parts:
                if isinstance(part, Reference):
                    yield part
        case dict():
            for item in value.values():
                yield from iter_references(item)
        case list():
            for item in value:
                yield from iter_references(item)
        case str() | bool() | int() | float() | None:
            return
        case _:
            raise TypeError(f"Not an attribute value: {value!r}")


def resolve_value(value: Any, lookup: Callable[[Reference], Any]) -> Any:
    """Resolve references in a value to plain JSON-compatible data.

    ``lookup`` maps a reference to its value. If any reference resolves to
    ``UNKNOWN`` the whole value is ``UNKNOWN``.
    """
    match value:
        case Reference():
            return lookup(value)
        case Template(parts=parts):
            rendered: list[str] = []
            for part in parts:
                if isinstance(part, Reference):
                    resolved = lookup(part)
                    if resolved is UNKNOWN:
                        return UNKNOWN
                    rendered.append(str(resolved))
                else:
                    rendered.append(part)
            return "".join(rendered)
        case dict():
            items = {key: resolve_value(item, lookup) for key, item in value.items()}
            if any(item is UNKNOWN for item in items.values()):
                return UNKNOWN
            return items
        case list():
            elements = [resolve_value(item, lookup) for item in value]
            if any(item is UNKNOWN for item in elements):
                return UNKNOWN
            return elements
        case str() | bool() | int() | float() | None:
            return value
        case _:
            raise TypeError(f"Not an attribute value: {value!r}")


def render_value(value: Any) -> Any:
    """Render a value for serialization, printing references as tokens."""
    match value:
        case Reference() | Template():
            return str(value)
        case dict():
            return {key: render_value(item) for key, item in value.items()}
        case list():
            return [render_value(item) for item in value]
        case _:
            return value


# =============================================================================
# Kind schemas
# =============================================================================


class AttributeType(str, Enum):
    """Structural attribute types."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    LIST = "list"
    MAP = "map"
    ANY = "any"


class AttributeSpec(BaseModel):
    """Declared shape and lifecycle flags of one attribute."""

    model_config = {"extra": "forbid", "frozen": True}

    type: AttributeType = AttributeType.STRING
    required: bool = False
    default: Any = None

    # Changing an immutable attribute forces a Replace
    immutable: bool = False

    # Set by the provider only; ignored when diffing
    computed: bool = False

    # Compared case-folded (Azure locations, SKU names)
    case_insensitive: bool = False

    def conforms(self, value: Any) -> bool:
        """Check the structural shape of a declared value."""
        if isinstance(value, Reference) or value is None:
            return True
        if isinstance(value, Template):
            return self.type in (AttributeType.STRING, AttributeType.ANY)

        match self.type:
            case AttributeType.STRING:
                return isinstance(value, str)
            case AttributeType.INTEGER:
                return isinstance(value, int) and not isinstance(value, bool)
            case AttributeType.NUMBER:
                return isinstance(value, int | float) and not isinstance(value, bool)
            case AttributeType.BOOLEAN:
                return isinstance(value, bool)
            case AttributeType.LIST:
                return isinstance(value, list)
            case AttributeType.MAP:
                return isinstance(value, dict)
            case AttributeType.ANY:
                return True


class KindSchema(BaseModel):
    """Schema of one resource kind as declared by a provider."""

    model_config = {"extra": "forbid", "frozen": True}

    kind: str = Field(pattern=VALID_KIND_PATTERN)
    attributes: dict[str, AttributeSpec] = Field(default_factory=dict)

    # Replace creates the new instance before destroying the old one
    create_before_destroy: bool = False

    @property
    def immutable_attributes(self) -> frozenset[str]:
        return frozenset(name for name, spec in self.attributes.items() if spec.immutable)

    @property
    def computed_attributes(self) -> frozenset[str]:
        return frozenset(name for name, spec in self.attributes.items() if spec.computed)

    def validate_attributes(
        self, identity: ResourceId, attributes: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Validate declared attributes and fill in defaults.

        Returns:
            Parsed attributes in schema order, computed attributes omitted.

        Raises:
            SchemaViolation: On unknown, computed-only, missing or mis-shaped attributes.
        """
        errors: list[str] = []

        unknown = [name for name in attributes if name not in self.attributes]
        if unknown:
            errors.append(f"unknown attributes {sorted(unknown)}")

        validated: dict[str, Any] = {}
        for name, spec in self.attributes.items():
            if spec.computed:
                if name in attributes:
                    errors.append(f"attribute '{name}' is computed by the provider")
                continue

            if name not in attributes:
                if spec.required and spec.default is None:
                    errors.append(f"missing required attribute '{name}'")
                    continue
                validated[name] = parse_value(spec.default)
                continue

            value = parse_value(attributes[name])
            if not spec.conforms(value):
                errors.append(
                    f"attribute '{name}' must be {spec.type.value}, "
                    f"got {type(value).__name__}"
                )
                continue
            validated[name] = value

        if errors:
            raise SchemaViolation("; ".join(errors), identity)
        return validated


# =============================================================================
# Resources
# =============================================================================


class Lifecycle(BaseModel):
    """Per-resource lifecycle options."""

    model_config = {"extra": "forbid", "frozen": True}

    # Attribute changes that never trigger an Update or Replace
    ignore_changes: list[str] = Field(default_factory=list)

    # Overrides the kind's replace ordering when set
    create_before_destroy: bool | None = None


@dataclass(frozen=True)
class Resource:
    """A declared resource. Build instances with ``Resource.declare``."""

    identity: ResourceId
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[ResourceId, ...] = ()
    lifecycle: Lifecycle = field(default_factory=Lifecycle)

    @property
    def kind(self) -> str:
        return self.identity.kind

    @property
    def name(self) -> str:
        return self.identity.name

    @classmethod
    def declare(
        cls,
        kind: str,
        name: str,
        attributes: Mapping[str, Any],
        schemas: Mapping[str, KindSchema],
        *,
        depends_on: Sequence[str | ResourceId] = (),
        lifecycle: Lifecycle | None = None,
    ) -> Resource:
        """Validate a declaration against the provider's kind schemas.

        Raises:
            SchemaViolation: If the kind is unknown or attributes do not conform.
        """
        identity = ResourceId.parse(f"{kind}.{name}")
        schema = schemas.get(kind)
        if schema is None:
            raise SchemaViolation(f"unknown resource kind '{kind}'", identity)

        lifecycle = lifecycle or Lifecycle()
        for attribute in lifecycle.ignore_changes:
            if attribute not in schema.attributes:
                raise SchemaViolation(
                    f"ignore_changes names unknown attribute '{attribute}'", identity
                )

        hints = tuple(
            dep if isinstance(dep, ResourceId) else ResourceId.parse(dep) for dep in depends_on
        )
        return cls(
            identity=identity,
            attributes=schema.validate_attributes(identity, attributes),
            depends_on=hints,
            lifecycle=lifecycle,
        )

    def references(self) -> list[Reference]:
        """All references embedded in this resource's attributes."""
        return list(iter_references(self.attributes))

    def dependencies(self) -> list[ResourceId]:
        """Explicit hints followed by reference targets, without duplicates."""
        seen: dict[ResourceId, None] = dict.fromkeys(self.depends_on)
        for reference in self.references():
            seen.setdefault(reference.target, None)
        return list(seen)
