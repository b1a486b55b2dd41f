"""
Strata Declaration - Parsing of resource declaration files.
"""

from strata.declaration.expressions import (
    KEEP,
    Reference,
    is_literal,
    parse_reference,
    references,
    substitute,
)
from strata.declaration.parser import (
    Declaration,
    OutputDecl,
    ResourceBlock,
    VariableDecl,
    load_declarations,
    parse_documents,
)

__all__ = [
    "KEEP",
    "Declaration",
    "OutputDecl",
    "Reference",
    "ResourceBlock",
    "VariableDecl",
    "is_literal",
    "load_declarations",
    "parse_documents",
    "parse_reference",
    "references",
    "substitute",
]
