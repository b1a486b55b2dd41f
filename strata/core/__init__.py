"""
Strata Core - Shared types, errors and resilience.
"""

from strata.core.exceptions import (
    AttributeConflictError,
    ConfigurationError,
    CycleError,
    GraphError,
    ParseError,
    PlanError,
    ProviderAPIError,
    StateCorruptionError,
    StateError,
    StrataError,
    TerminalProviderError,
    TransientProviderError,
    UnresolvedReferenceError,
)
from strata.core.types import (
    UNKNOWN,
    ApplyResult,
    Change,
    ChangeStatus,
    Operation,
    Plan,
    ResourceFailure,
)

__all__ = [
    "UNKNOWN",
    "ApplyResult",
    "AttributeConflictError",
    "Change",
    "ChangeStatus",
    "ConfigurationError",
    "CycleError",
    "GraphError",
    "Operation",
    "ParseError",
    "Plan",
    "PlanError",
    "ProviderAPIError",
    "ResourceFailure",
    "StateCorruptionError",
    "StateError",
    "StrataError",
    "TerminalProviderError",
    "TransientProviderError",
    "UnresolvedReferenceError",
]
