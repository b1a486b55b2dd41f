"""
Engine - Wires declarations, state, planner, applier and provider together.

Usage:
    engine = Engine(config)
    plan = await engine.plan("infra/")
    plan, result = await engine.apply("infra/")
    value = await engine.output("jenkins_url")
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from loguru import logger

from strata.config.models import StrataConfig
from strata.core.resilience import RetryPolicy
from strata.core.types import ApplyResult, Plan
from strata.declaration.expressions import Reference, substitute
from strata.declaration.parser import Declaration, load_declarations
from strata.engine.applier import Applier
from strata.engine.planner import Planner
from strata.graph.builder import GraphBuilder
from strata.graph.model import DependencyGraph
from strata.providers import build_provider
from strata.providers.base import Provider
from strata.schema.builtin import default_registry
from strata.schema.registry import SchemaRegistry
from strata.state.models import OutputValue, StateRecord
from strata.state.repository import StateRepository
from strata.utils.logger import log_prefix


class _MissingRecord(Exception):
    """An output references a resource with no state record."""


class Engine:
    """Facade used by the CLI and by library callers."""

    def __init__(
        self,
        config: StrataConfig | None = None,
        provider: Provider | None = None,
        repository: StateRepository | None = None,
        registry: SchemaRegistry | None = None,
    ) -> None:
        self.config = config or StrataConfig()
        self.registry = registry or default_registry()
        self.repository = repository or StateRepository(self.config.general.state_path)
        self.provider = provider or build_provider(self.config.provider)
        self.builder = GraphBuilder(self.registry)

        apply_config = self.config.apply
        policy = RetryPolicy(
            max_attempts=apply_config.max_attempts,
            initial_delay=apply_config.initial_delay,
            max_delay=apply_config.max_delay,
        )
        self.planner = Planner(self.registry, self.repository, self.provider, policy)
        self.applier = Applier(self.provider, self.repository, apply_config)

    # =========================================================================
    # Declarations
    # =========================================================================

    def load(
        self,
        path: Path | str,
        variables: Mapping[str, Any] | None = None,
        var_files: list[Path | str] | None = None,
    ) -> tuple[Declaration, DependencyGraph]:
        """Parse declarations and build the validated graph."""
        declaration = load_declarations(path, variables=variables, var_files=var_files)
        graph = self.builder.build_declaration(declaration)
        return declaration, graph

    # =========================================================================
    # Plan / apply / destroy
    # =========================================================================

    def _refresh(self, refresh: bool | None) -> bool:
        return self.config.general.refresh if refresh is None else refresh

    async def plan(
        self,
        path: Path | str,
        variables: Mapping[str, Any] | None = None,
        var_files: list[Path | str] | None = None,
        refresh: bool | None = None,
    ) -> Plan:
        _, graph = self.load(path, variables, var_files)
        return await self.planner.plan(graph, refresh=self._refresh(refresh))

    async def apply(
        self,
        path: Path | str,
        variables: Mapping[str, Any] | None = None,
        var_files: list[Path | str] | None = None,
        refresh: bool | None = None,
    ) -> tuple[Plan, ApplyResult]:
        """Plan and apply; outputs are stored only when every change succeeded."""
        declaration, graph = self.load(path, variables, var_files)
        plan = await self.planner.plan(graph, refresh=self._refresh(refresh))
        result = await self.applier.apply(plan)
        if result.success:
            await self.store_outputs(declaration)
        return plan, result

    async def destroy(self, refresh: bool | None = None) -> tuple[Plan, ApplyResult]:
        """Destroy every resource in state, dependents first."""
        plan = await self.planner.plan(DependencyGraph(), destroy=True, refresh=self._refresh(refresh))
        result = await self.applier.apply(plan)
        if result.success:
            await self.repository.replace_outputs([])
        return plan, result

    # =========================================================================
    # Outputs
    # =========================================================================

    async def store_outputs(self, declaration: Declaration) -> list[OutputValue]:
        """Evaluate declared outputs against state and store them."""
        records = await self.repository.records_by_address()
        values: list[OutputValue] = []

        for output in declaration.outputs.values():
            try:
                value = substitute(output.value, lambda ref: _lookup(records, ref))
            except _MissingRecord as e:
                logger.warning(f"{log_prefix('⚠️')} Output '{output.name}' not stored: no state for {e}")
                continue
            values.append(OutputValue(name=output.name, value=value, sensitive=output.sensitive))

        await self.repository.replace_outputs(values)
        logger.debug(f"Stored {len(values)} output(s)")
        return values

    async def output(self, name: str) -> OutputValue | None:
        return await self.repository.get_output(name)

    async def outputs(self) -> list[OutputValue]:
        return await self.repository.list_outputs()

    # =========================================================================
    # State inspection
    # =========================================================================

    async def state_list(self) -> list[StateRecord]:
        return await self.repository.list_records()

    async def state_show(self, address: str) -> StateRecord | None:
        return await self.repository.get_record(address)

    async def close(self) -> None:
        await self.provider.close()


def _lookup(records: dict[str, StateRecord], ref: Reference) -> Any:
    record = records.get(ref.address)
    if record is None:
        raise _MissingRecord(ref.address)
    return record.value_of(ref.attribute)
