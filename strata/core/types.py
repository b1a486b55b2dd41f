"""
Strata Core - Shared types and enums.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any


class Operation(StrEnum):
    """Change operation."""

    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"  # Destroy then create on the same node
    DESTROY = "destroy"
    NOOP = "no-op"


class ChangeStatus(StrEnum):
    """Outcome of a change during apply."""

    PENDING = "pending"
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"


# Marker for values that are only known once a dependency has been applied
UNKNOWN = "(known after apply)"


@dataclass
class Change:
    """A single planned change for one resource."""

    address: str
    kind: str
    name: str
    operation: Operation
    reason: str
    before: dict[str, Any] = field(default_factory=dict)
    after: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    # Dependencies recorded in state; ordering for the destroy half of a replace
    prior_dependencies: list[str] = field(default_factory=list)
    # Declared attributes with resource references unresolved
    declared: dict[str, Any] = field(default_factory=dict)

    @property
    def changed_attributes(self) -> list[str]:
        keys = set(self.before) | set(self.after)
        return sorted(k for k in keys if self.before.get(k) != self.after.get(k))

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "operation": self.operation.value,
            "reason": self.reason,
        }


@dataclass
class Plan:
    """Ordered change-set between declared and actual state."""

    changes: list[Change] = field(default_factory=list)
    destroy: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def actionable(self) -> list[Change]:
        """Changes that require a provider call."""
        return [c for c in self.changes if c.operation != Operation.NOOP]

    @property
    def has_changes(self) -> bool:
        return bool(self.actionable)

    def summary(self) -> dict[str, int]:
        counts = {op.value: 0 for op in Operation}
        for change in self.changes:
            counts[change.operation.value] += 1
        return counts

    def get(self, address: str) -> Change | None:
        for change in self.changes:
            if change.address == address:
                return change
        return None


@dataclass
class ResourceFailure:
    """A resource that failed or was skipped during apply."""

    address: str
    operation: str
    reason: str
    status: ChangeStatus = ChangeStatus.FAILED


@dataclass
class ApplyResult:
    """Result of applying a plan."""

    applied: list[Change] = field(default_factory=list)
    failures: list[ResourceFailure] = field(default_factory=list)
    skipped: list[ResourceFailure] = field(default_factory=list)
    timed_out: bool = False
    duration_s: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failures and not self.skipped and not self.timed_out

    @property
    def applied_addresses(self) -> list[str]:
        return [c.address for c in self.applied]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "applied": [c.to_dict() for c in self.applied],
            "failed": [
                {"address": f.address, "operation": f.operation, "reason": f.reason}
                for f in self.failures
            ],
            "skipped": [
                {"address": f.address, "operation": f.operation, "reason": f.reason}
                for f in self.skipped
            ],
            "timed_out": self.timed_out,
            "duration_s": round(self.duration_s, 3),
        }
