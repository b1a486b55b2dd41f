"""
Provider interface.

A provider performs create/read/update/delete on remote resources of
the kinds it supports. Implementations raise TransientProviderError for
throttling-style failures and TerminalProviderError for everything else.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any


@dataclass
class RemoteResource:
    """What the provider reports about one remote resource."""

    remote_id: str
    outputs: dict[str, Any] = field(default_factory=dict)


class Provider(ABC):
    """Base class for cloud providers."""

    name: str = "base"

    @abstractmethod
    def supports(self, kind: str) -> bool:
        """True if the provider can manage this resource kind."""

    @abstractmethod
    async def create(self, kind: str, name: str, attributes: dict[str, Any]) -> RemoteResource:
        """Create a resource and return its id and computed outputs."""

    @abstractmethod
    async def read(self, kind: str, remote_id: str) -> RemoteResource | None:
        """Current outputs of a resource, or None if it no longer exists."""

    @abstractmethod
    async def update(
        self,
        kind: str,
        remote_id: str,
        attributes: dict[str, Any],
        changed: set[str],
    ) -> RemoteResource:
        """Apply in-place changes to the ``changed`` attributes."""

    @abstractmethod
    async def delete(self, kind: str, remote_id: str) -> None:
        """Delete a resource."""

    @abstractmethod
    async def find(self, kind: str, name: str) -> RemoteResource | None:
        """Look a resource up by its logical address tag."""

    async def close(self) -> None:  # noqa: B027 - optional hook
        """Release provider resources."""
