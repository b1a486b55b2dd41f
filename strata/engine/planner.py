"""
Planner - Refresh remote state, then diff the declared graph against it.

Refresh drops records whose remote resource disappeared (drift) and
settles journal entries left by interrupted runs. The diff walks the
graph in topological order so references to dependencies being created
or replaced plan as unknown values.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from strata.core.exceptions import AttributeConflictError
from strata.core.resilience import RetryPolicy, call_with_retry
from strata.core.types import UNKNOWN, Change, Operation, Plan
from strata.declaration.expressions import Reference, is_literal, substitute
from strata.graph.model import DependencyGraph, topological_sort
from strata.providers.base import Provider
from strata.schema.registry import SchemaRegistry
from strata.state.models import FAILED_CREATE, StateRecord
from strata.state.repository import StateRepository
from strata.utils.logger import log_prefix

PENDING_OPERATIONS = (Operation.CREATE, Operation.REPLACE)


@dataclass
class RefreshReport:
    """What refresh changed in state."""

    drifted: list[str] = field(default_factory=list)
    adopted: list[str] = field(default_factory=list)
    discarded: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)


class Planner:
    """Produces ordered change-sets."""

    def __init__(
        self,
        registry: SchemaRegistry,
        repository: StateRepository,
        provider: Provider,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.registry = registry
        self.repository = repository
        self.provider = provider
        self.policy = policy or RetryPolicy()

    # =========================================================================
    # Refresh
    # =========================================================================

    async def refresh(self) -> RefreshReport:
        """
        Reconcile state with the remote account.

        Pending journal entries are settled first: a create whose resource
        can be found by address is adopted, a rejected create has whatever
        it left behind deleted, anything else is discarded.
        Then every record is re-read; vanished resources are dropped.
        """
        report = RefreshReport()

        for entry in await self.repository.list_pending():
            existing = await self.repository.get_record(entry.address)
            if entry.operation == FAILED_CREATE and existing is None:
                found = await call_with_retry(
                    self.provider.find, entry.kind, entry.name,
                    policy=self.policy, label=f"find {entry.address}",
                )
                if found is not None:
                    await call_with_retry(
                        self.provider.delete, entry.kind, found.remote_id,
                        policy=self.policy, label=f"delete {entry.address}",
                    )
                    report.removed.append(entry.address)
                    logger.warning(
                        f"{log_prefix('🧹')} Deleted {entry.address} ({found.remote_id}) left by a failed create"
                    )
                await self.repository.clear_operation(entry.address)
                continue
            if entry.operation == Operation.CREATE.value and existing is None:
                found = await call_with_retry(
                    self.provider.find, entry.kind, entry.name,
                    policy=self.policy, label=f"find {entry.address}",
                )
                if found is not None:
                    await self.repository.save_record(
                        StateRecord(
                            kind=entry.kind,
                            name=entry.name,
                            remote_id=found.remote_id,
                            attributes=entry.attributes,
                            outputs=found.outputs,
                            dependencies=entry.dependencies,
                        )
                    )
                    report.adopted.append(entry.address)
                    logger.warning(
                        f"{log_prefix('🧹')} Adopted {entry.address} ({found.remote_id}) left by an interrupted run"
                    )
                    continue
            await self.repository.clear_operation(entry.address)
            report.discarded.append(entry.address)
            logger.info(f"{log_prefix('🧹')} Discarded pending {entry.operation} of {entry.address}")

        for record in await self.repository.list_records():
            remote = await call_with_retry(
                self.provider.read, record.kind, record.remote_id,
                policy=self.policy, label=f"read {record.address}",
            )
            if remote is None:
                await self.repository.delete_record(record.address)
                report.drifted.append(record.address)
                logger.warning(
                    f"{log_prefix('⚠️')} Drift: {record.address} ({record.remote_id}) no longer exists"
                )
            elif remote.outputs != record.outputs:
                record.outputs = remote.outputs
                await self.repository.save_record(record)
                report.updated.append(record.address)

        logger.debug(
            f"{log_prefix('🔍')} Refresh: {len(report.drifted)} drifted, {len(report.adopted)} adopted, "
            f"{len(report.discarded)} discarded, {len(report.removed)} removed"
        )
        return report

    # =========================================================================
    # Plan
    # =========================================================================

    async def plan(self, graph: DependencyGraph, destroy: bool = False, refresh: bool = True) -> Plan:
        """
        Compute the change-set.

        Args:
            graph: Declared graph (ignored in destroy mode)
            destroy: Plan destruction of everything in state
            refresh: Re-read remote state first

        Raises:
            AttributeConflictError: Two nodes declare the same unique value
        """
        if refresh:
            await self.refresh()
        records = await self.repository.records_by_address()

        if destroy:
            changes = self._destroy_changes(records, set(records), "destroy requested")
            plan = Plan(changes=changes, destroy=True)
            logger.info(f"{log_prefix('📋')} Destroy plan: {len(changes)} resource(s)")
            return plan

        self.check_conflicts(graph)

        removed = set(records) - set(graph.nodes)
        changes = self._destroy_changes(records, removed, "no longer declared")

        planned: dict[str, Change] = {}
        for address in graph.order:
            change = self._diff_node(graph, address, records.get(address), planned, records, removed)
            planned[address] = change
            changes.append(change)

        plan = Plan(changes=changes)
        logger.info(f"{log_prefix('📋')} Plan: {_format_summary(plan.summary())}")
        return plan

    def check_conflicts(self, graph: DependencyGraph) -> None:
        """
        Reject duplicate values of remote-unique attributes.

        Values that are still expressions are ignored; scope attributes are
        compared as declared, so two subnets referencing the same network
        share a scope.
        """
        seen: dict[str, list[str]] = {}
        values: dict[str, tuple[str, Any]] = {}
        for address in graph.order:
            node = graph.get(address)
            schema = self.registry.get(node.kind)
            for constraint in schema.unique:
                value = node.attributes.get(constraint.attribute)
                if value is None or not is_literal(value):
                    continue
                scope = [node.attributes.get(s) for s in constraint.scope]
                key = json.dumps([node.kind, constraint.attribute, scope, value], sort_keys=True, default=str)
                seen.setdefault(key, []).append(address)
                values[key] = (constraint.attribute, value)

        for key, addresses in seen.items():
            if len(addresses) > 1:
                attribute, value = values[key]
                raise AttributeConflictError(attribute, value, addresses)

    def _destroy_changes(self, records: dict[str, StateRecord], addresses: set[str], reason: str) -> list[Change]:
        dependencies = {a: records[a].dependencies for a in addresses}
        order = list(reversed(topological_sort(addresses, dependencies)))
        return [
            Change(
                address=address,
                kind=records[address].kind,
                name=records[address].name,
                operation=Operation.DESTROY,
                reason=reason,
                before=dict(records[address].attributes),
                after={},
                dependencies=list(records[address].dependencies),
                prior_dependencies=list(records[address].dependencies),
            )
            for address in order
        ]

    def _diff_node(
        self,
        graph: DependencyGraph,
        address: str,
        record: StateRecord | None,
        planned: dict[str, Change],
        records: dict[str, StateRecord],
        removed: set[str],
    ) -> Change:
        node = graph.get(address)
        schema = self.registry.get(node.kind)
        after = self._evaluate(node.attributes, planned, records)
        change = Change(
            address=address,
            kind=node.kind,
            name=node.name,
            operation=Operation.NOOP,
            reason="up to date",
            before=dict(record.attributes) if record else {},
            after=after,
            dependencies=graph.dependencies(address),
            prior_dependencies=list(record.dependencies) if record else [],
            declared=dict(node.attributes),
        )

        if record is None:
            change.operation = Operation.CREATE
            change.reason = "not in state"
            return change

        changed = change.changed_attributes
        if not changed:
            return change

        forcing = [a for a in changed if not schema.is_updatable(a)]
        if forcing:
            change.operation = Operation.REPLACE
            change.reason = f"cannot update in place: {', '.join(forcing)}"
            return change

        # An update cannot move off a resource that is destroyed before it runs
        for dep in record.dependencies:
            going = dep in removed or (dep in planned and planned[dep].operation == Operation.REPLACE)
            if going and dep in records and _references_id(record.attributes, records[dep].remote_id):
                change.operation = Operation.REPLACE
                change.reason = f"depends on {'destroyed' if dep in removed else 'replaced'} {dep}"
                return change

        change.operation = Operation.UPDATE
        change.reason = f"attributes changed: {', '.join(changed)}"
        return change

    def _evaluate(
        self,
        attributes: dict[str, Any],
        planned: dict[str, Change],
        records: dict[str, StateRecord],
    ) -> dict[str, Any]:
        """Declared attributes with references replaced by planned or stored values."""

        def resolve(ref: Reference) -> Any:
            dep = planned[ref.address]
            schema = self.registry.get(dep.kind)
            declared = dep.after.get(ref.attribute)
            if ref.attribute in schema.attributes and declared is not None:
                return declared
            if dep.operation in PENDING_OPERATIONS:
                return UNKNOWN
            return records[ref.address].value_of(ref.attribute)

        return substitute(attributes, resolve)


def _format_summary(summary: dict[str, int]) -> str:
    parts = [f"{count} to {op}" for op, count in summary.items() if count and op != Operation.NOOP]
    return ", ".join(parts) or "no changes"


def _references_id(value: Any, remote_id: str) -> bool:
    if isinstance(value, dict):
        return any(_references_id(v, remote_id) for v in value.values())
    if isinstance(value, list):
        return any(_references_id(v, remote_id) for v in value)
    return value == remote_id
