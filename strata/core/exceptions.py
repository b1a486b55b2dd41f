"""
Core Exceptions - Unified error hierarchy for Strata.

Each exception type handles one category of errors.
"""


class StrataError(Exception):
    """Base exception for all Strata errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | {self.details}"
        return self.message


# =============================================================================
# Declaration Errors
# =============================================================================

class ParseError(StrataError):
    """Malformed declaration file, variable or expression."""

    def __init__(self, message: str, source: str | None = None, details: dict | None = None):
        merged = dict(details or {})
        if source:
            merged["source"] = source
        super().__init__(message, merged)
        self.source = source


# =============================================================================
# Graph Errors
# =============================================================================

class GraphError(StrataError):
    """Dependency graph could not be built."""
    pass


class CycleError(GraphError):
    """Resource references form a cycle."""

    def __init__(self, cycle: list[str]):
        super().__init__(
            f"Dependency cycle detected: {' -> '.join(cycle)}",
            {"cycle": cycle}
        )
        self.cycle = cycle


class UnresolvedReferenceError(GraphError):
    """An attribute references a node or output that does not exist."""

    def __init__(self, address: str, reference: str, reason: str):
        super().__init__(
            f"Unresolved reference '{reference}' in {address}: {reason}",
            {"address": address, "reference": reference}
        )
        self.address = address
        self.reference = reference


# =============================================================================
# Planning Errors
# =============================================================================

class PlanError(StrataError):
    """Planning failed."""
    pass


class AttributeConflictError(PlanError):
    """Two nodes declare the same remote-unique attribute value."""

    def __init__(self, attribute: str, value: object, addresses: list[str]):
        super().__init__(
            f"Attribute '{attribute}' = {value!r} is declared by more than one resource: "
            f"{', '.join(addresses)}",
            {"attribute": attribute, "value": value, "addresses": addresses}
        )
        self.attribute = attribute
        self.value = value
        self.addresses = addresses


# =============================================================================
# Provider Errors
# =============================================================================

class ProviderAPIError(StrataError):
    """Remote provider call failed."""

    transient = False

    def __init__(self, operation: str, kind: str, reason: str, code: str | None = None):
        super().__init__(
            f"{operation} {kind} failed: {reason}",
            {"operation": operation, "kind": kind, "code": code, "transient": self.transient}
        )
        self.operation = operation
        self.kind = kind
        self.reason = reason
        self.code = code


class TransientProviderError(ProviderAPIError):
    """Rate limiting or throttling; safe to retry."""

    transient = True


class TerminalProviderError(ProviderAPIError):
    """Invalid parameter or other non-retryable failure."""

    transient = False


# =============================================================================
# State Errors
# =============================================================================

class StateError(StrataError):
    """State store operation failed."""
    pass


class StateCorruptionError(StateError):
    """State store is unreadable."""

    def __init__(self, path: str, reason: str):
        super().__init__(
            f"State store at {path} is unreadable: {reason}",
            {"path": path, "reason": reason}
        )
        self.path = path
        self.reason = reason


# =============================================================================
# Configuration Errors
# =============================================================================

class ConfigurationError(StrataError):
    """Configuration error."""
    pass
