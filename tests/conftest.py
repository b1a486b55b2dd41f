"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import asyncio
import textwrap
from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from strata.config.models import ApplyConfig, StrataConfig
from strata.core.metrics import reset_metrics
from strata.engine.engine import Engine
from strata.providers.local import LocalProvider
from strata.schema.builtin import default_registry
from strata.schema.registry import SchemaRegistry
from strata.state.repository import StateRepository

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

# Use pytest-asyncio's built-in event loop management
# See: https://pytest-asyncio.readthedocs.io/en/latest/concepts.html
pytest_plugins = ("pytest_asyncio",)

NETWORK_AND_SUBNET = """
resources:
  network:
    main:
      cidr_block: 10.0.0.0/16
  subnet:
    public:
      network_id: ${network.main.id}
      cidr_block: 10.0.1.0/24
outputs:
  subnet_id:
    value: ${subnet.public.id}
"""


@pytest.fixture(scope="session")
def event_loop_policy() -> asyncio.AbstractEventLoopPolicy:
    """Return the event loop policy to use for tests."""
    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture(autouse=True)
def _isolate(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep tests away from ~/.strata and reset global metrics."""
    monkeypatch.setenv("STRATA_LOG_DIR", str(tmp_path / "logs"))
    monkeypatch.setenv("STRATA_EMOJI_LOGS", "0")
    reset_metrics()


@pytest.fixture
def state_path(tmp_path: Path) -> Path:
    """Temporary state database path."""
    return tmp_path / "state.db"


@pytest.fixture
async def repository(state_path: Path) -> AsyncGenerator[StateRepository, None]:
    """Initialized state repository."""
    repo = StateRepository(state_path)
    await repo.initialize()
    yield repo


@pytest.fixture
def provider() -> LocalProvider:
    """In-memory simulated provider."""
    return LocalProvider()


@pytest.fixture
def registry() -> SchemaRegistry:
    return default_registry()


@pytest.fixture
def apply_config() -> ApplyConfig:
    """Apply settings without backoff sleeps."""
    return ApplyConfig(max_workers=4, max_attempts=3, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def engine(
    provider: LocalProvider,
    repository: StateRepository,
    registry: SchemaRegistry,
    apply_config: ApplyConfig,
) -> Engine:
    return Engine(StrataConfig(apply=apply_config), provider=provider, repository=repository, registry=registry)


@pytest.fixture
def write_declaration(tmp_path: Path) -> Callable[..., Path]:
    """Write YAML into tmp_path/infra/<name> and return the directory."""
    root = tmp_path / "infra"

    def _write(content: str, name: str = "main.yaml") -> Path:
        root.mkdir(exist_ok=True)
        (root / name).write_text(textwrap.dedent(content), encoding="utf-8")
        return root

    return _write


@pytest.fixture
def network_and_subnet(write_declaration: Callable[..., Path]) -> Path:
    """Declaration of one network with one dependent subnet."""
    return write_declaration(NETWORK_AND_SUBNET)
