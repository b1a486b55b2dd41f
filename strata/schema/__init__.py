"""
Strata Schema - Resource kinds and their attribute shapes.
"""

from strata.schema.builtin import BUILTIN_SCHEMAS, default_registry
from strata.schema.registry import (
    AttributeSpec,
    ResourceSchema,
    SchemaRegistry,
    UniqueConstraint,
    matches_type,
)

__all__ = [
    "BUILTIN_SCHEMAS",
    "AttributeSpec",
    "ResourceSchema",
    "SchemaRegistry",
    "UniqueConstraint",
    "default_registry",
    "matches_type",
]
