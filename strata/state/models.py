"""
Strata State - Models.

Records persisted for each applied resource.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Journal operation of a create the provider rejected part way through
FAILED_CREATE = "failed-create"


@dataclass
class StateRecord:
    """Last-known state of one applied resource."""

    kind: str
    name: str
    remote_id: str
    attributes: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def address(self) -> str:
        return f"{self.kind}.{self.name}"

    def value_of(self, attribute: str) -> Any:
        """
        Value of an attribute or computed output.

        ``id`` is the remote id; computed outputs win over declared values.
        """
        if attribute == "id":
            return self.remote_id
        if attribute in self.outputs:
            return self.outputs[attribute]
        return self.attributes.get(attribute)


@dataclass
class JournalEntry:
    """A remote call in flight, written before the call is issued."""

    address: str
    kind: str
    name: str
    operation: str
    attributes: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)


@dataclass
class OutputValue:
    """A stored output."""

    name: str
    value: Any
    sensitive: bool = False
    updated_at: datetime = field(default_factory=datetime.now)
