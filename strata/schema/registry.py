"""
Resource Schema Registry - Per-kind attribute shapes.

Each resource kind declares its attributes (required/optional, type,
whether they can change in place), its computed outputs and its
remote-unique attributes. Kinds form a closed set: anything not
registered is rejected at parse time.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from strata.core.exceptions import ParseError

# Declared type name -> accepted Python types
TYPE_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "bool": (bool,),
    "list": (list,),
    "map": (dict,),
}


def matches_type(value: Any, type_name: str) -> bool:
    """Check a literal value against a declared type name."""
    if type_name == "any":
        return True
    accepted = TYPE_CHECKS.get(type_name)
    if accepted is None:
        return False
    # bool is an int subclass; a number attribute must not accept True
    if type_name == "number" and isinstance(value, bool):
        return False
    return isinstance(value, accepted)


@dataclass(frozen=True)
class AttributeSpec:
    """A declarable attribute of a resource kind."""

    name: str
    type: str = "string"
    required: bool = False
    updatable: bool = True
    default: Any = None


@dataclass(frozen=True)
class UniqueConstraint:
    """Attribute whose value must be unique among nodes sharing the same scope values."""

    attribute: str
    scope: tuple[str, ...] = ()


@dataclass(frozen=True)
class ResourceSchema:
    """Shape of one resource kind."""

    kind: str
    attributes: dict[str, AttributeSpec]
    computed: tuple[str, ...] = ("id",)
    unique: tuple[UniqueConstraint, ...] = ()
    description: str = ""

    def exposes(self, attribute: str) -> bool:
        """True if other nodes may reference this attribute."""
        return attribute == "id" or attribute in self.computed or attribute in self.attributes

    def is_updatable(self, attribute: str) -> bool:
        spec = self.attributes.get(attribute)
        return spec is not None and spec.updatable

    def with_defaults(self, attributes: dict[str, Any]) -> dict[str, Any]:
        """Return attributes with schema defaults filled in."""
        merged = dict(attributes)
        for name, spec in self.attributes.items():
            if name not in merged and spec.default is not None:
                merged[name] = spec.default
        return merged

    def validate(self, address: str, attributes: dict[str, Any], is_literal=None) -> None:
        """
        Validate declared attributes.

        Args:
            address: Node address for error messages
            attributes: Declared attributes
            is_literal: Optional predicate; values for which it returns False
                (unresolved expressions) are not type-checked

        Raises:
            ParseError: On unknown or missing attributes, or type mismatch
        """
        unknown = sorted(set(attributes) - set(self.attributes))
        if unknown:
            raise ParseError(
                f"{address}: unknown attribute(s) {', '.join(unknown)} for kind '{self.kind}'",
                details={"address": address, "allowed": sorted(self.attributes)},
            )

        for name, spec in self.attributes.items():
            if spec.required and attributes.get(name) is None:
                raise ParseError(
                    f"{address}: missing required attribute '{name}'",
                    details={"address": address, "attribute": name},
                )

        for name, value in attributes.items():
            if value is None:
                continue
            if is_literal is not None and not is_literal(value):
                continue
            spec = self.attributes[name]
            if not matches_type(value, spec.type):
                raise ParseError(
                    f"{address}: attribute '{name}' must be {spec.type}, got {type(value).__name__}",
                    details={"address": address, "attribute": name},
                )


@dataclass
class SchemaRegistry:
    """
    Registry of resource kinds.

    Usage:
        registry = SchemaRegistry()
        registry.register(ResourceSchema(kind="network", attributes={...}))
        schema = registry.get("network")
    """

    _schemas: dict[str, ResourceSchema] = field(default_factory=dict)

    def register(self, schema: ResourceSchema) -> None:
        if schema.kind in self._schemas:
            logger.warning(f"Resource kind '{schema.kind}' already registered, overwriting")
        self._schemas[schema.kind] = schema
        logger.debug(f"Registered resource kind: {schema.kind}")

    def register_all(self, schemas: Iterable[ResourceSchema]) -> None:
        for schema in schemas:
            self.register(schema)

    def get(self, kind: str) -> ResourceSchema:
        """
        Get a schema by kind.

        Raises:
            ParseError: If the kind is not registered
        """
        schema = self._schemas.get(kind)
        if schema is None:
            raise ParseError(
                f"Unknown resource kind '{kind}'",
                details={"kind": kind, "available": self.kinds()},
            )
        return schema

    def has(self, kind: str) -> bool:
        return kind in self._schemas

    def kinds(self) -> list[str]:
        return sorted(self._schemas)

    def __len__(self) -> int:
        return len(self._schemas)
