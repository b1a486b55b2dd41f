"""
Applier - Execute a plan against a provider.

Two phases run one after the other:

1. destroy: DESTROY changes and the destroy half of REPLACE changes,
   each waiting for the destruction of everything that depended on it;
2. forward: CREATE, UPDATE and the create half of REPLACE, each waiting
   for its dependencies.

Steps whose prerequisites are done run concurrently, at most
``max_workers`` at a time. A terminal failure stops new steps from
starting; steps already running finish and keep their state. The run
timeout does the same once exceeded.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from strata.config.models import ApplyConfig
from strata.core.exceptions import ProviderAPIError, TerminalProviderError, UnresolvedReferenceError
from strata.core.metrics import get_registry
from strata.core.resilience import RetryPolicy, call_with_retry
from strata.core.types import (
    ApplyResult,
    Change,
    ChangeStatus,
    Operation,
    Plan,
    ResourceFailure,
)
from strata.declaration.expressions import Reference, substitute
from strata.providers.base import Provider
from strata.state.models import JournalEntry, StateRecord
from strata.state.repository import StateRepository
from strata.utils.logger import log_prefix

DESTROY_PHASE = (Operation.DESTROY, Operation.REPLACE)
FORWARD_PHASE = (Operation.CREATE, Operation.UPDATE, Operation.REPLACE)


class _Run:
    """Mutable bookkeeping for one apply."""

    def __init__(self, deadline: float | None) -> None:
        self.deadline = deadline
        self.aborted = False
        self.result = ApplyResult()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline


class Applier:
    """Runs plans with bounded concurrency, retries and partial-apply semantics."""

    def __init__(
        self,
        provider: Provider,
        repository: StateRepository,
        config: ApplyConfig | None = None,
    ) -> None:
        self.provider = provider
        self.repository = repository
        self.config = config or ApplyConfig()
        self.policy = RetryPolicy(
            max_attempts=self.config.max_attempts,
            initial_delay=self.config.initial_delay,
            max_delay=self.config.max_delay,
        )

    async def apply(self, plan: Plan) -> ApplyResult:
        """
        Execute every actionable change of a plan.

        Returns:
            ApplyResult listing applied, failed and skipped changes

        Raises:
            StateCorruptionError: If state can no longer be written
        """
        started = time.monotonic()
        deadline = started + self.config.run_timeout if self.config.run_timeout else None
        run = _Run(deadline)
        actionable = plan.actionable

        logger.info(
            f"{log_prefix('🚀')} Applying {len(actionable)} change(s) "
            f"with {self.config.max_workers} worker(s)"
        )

        destroy_steps = [c for c in actionable if c.operation in DESTROY_PHASE]
        forward_steps = [c for c in actionable if c.operation in FORWARD_PHASE]

        destroyed = await self._run_phase(
            destroy_steps, self._destroy_waits(destroy_steps), self._destroy, run, record_applied=False
        )
        for change in destroy_steps:
            if change.operation == Operation.DESTROY and change.address in destroyed:
                run.result.applied.append(change)

        # The create half of a replace only runs once its destroy half did
        blocked = {
            c.address: "destroy half of replace did not complete"
            for c in forward_steps
            if c.operation == Operation.REPLACE and c.address not in destroyed
        }
        await self._run_phase(
            forward_steps, self._forward_waits(forward_steps), self._forward, run,
            record_applied=True, blocked=blocked,
        )

        run.result.duration_s = time.monotonic() - started
        get_registry().histogram("strata_apply_duration_seconds").observe(run.result.duration_s)

        summary = run.result
        emoji = "✅" if summary.success else "❌"
        calls = get_registry().counter("strata_provider_calls_total").by("status")
        logger.info(
            f"{log_prefix(emoji)} Apply finished in {summary.duration_s:.1f}s: "
            f"{len(summary.applied)} applied, {len(summary.failures)} failed, {len(summary.skipped)} skipped "
            f"({calls.get('ok', 0)} provider calls ok, {calls.get('error', 0)} failed)"
        )
        return summary

    # =========================================================================
    # Scheduling
    # =========================================================================

    @staticmethod
    def _destroy_waits(steps: list[Change]) -> dict[str, set[str]]:
        """A resource is destroyed after every step that depended on it."""
        addresses = {c.address for c in steps}
        waits: dict[str, set[str]] = {a: set() for a in addresses}
        for change in steps:
            for dep in change.prior_dependencies:
                if dep in addresses:
                    waits[dep].add(change.address)
        return waits

    @staticmethod
    def _forward_waits(steps: list[Change]) -> dict[str, set[str]]:
        addresses = {c.address for c in steps}
        return {c.address: {d for d in c.dependencies if d in addresses} for c in steps}

    async def _run_phase(
        self,
        steps: list[Change],
        waits: dict[str, set[str]],
        handler: Callable[[Change], Awaitable[None]],
        run: _Run,
        record_applied: bool,
        blocked: dict[str, str] | None = None,
    ) -> set[str]:
        """Run one phase; returns the addresses that completed."""
        blocked = blocked or {}
        if not steps:
            return set()

        done = {c.address: asyncio.Event() for c in steps}
        completed: set[str] = set()
        semaphore = asyncio.Semaphore(self.config.max_workers)

        async def execute(change: Change) -> None:
            try:
                if change.address in blocked:
                    if not self._reported(run, change.address):
                        self._skip(run, change, blocked[change.address])
                    return
                for dep in sorted(waits[change.address]):
                    await done[dep].wait()
                if any(dep not in completed for dep in waits[change.address]):
                    self._skip(run, change, "a dependency did not complete")
                    return
                async with semaphore:
                    if run.aborted:
                        self._skip(run, change, "apply aborted after a failure")
                        return
                    if run.expired:
                        run.result.timed_out = True
                        self._skip(run, change, "run timeout exceeded")
                        return
                    try:
                        await handler(change)
                    except (ProviderAPIError, UnresolvedReferenceError) as e:
                        run.aborted = True
                        run.result.failures.append(
                            ResourceFailure(change.address, change.operation.value, e.message)
                        )
                        logger.error(f"{log_prefix('❌')} {change.address}: {change.operation} failed: {e}")
                        return
                completed.add(change.address)
                if record_applied:
                    run.result.applied.append(change)
            finally:
                done[change.address].set()

        outcomes = await asyncio.gather(*(execute(c) for c in steps), return_exceptions=True)
        errors = [o for o in outcomes if isinstance(o, BaseException)]
        if errors:
            raise errors[0]
        return completed

    @staticmethod
    def _reported(run: _Run, address: str) -> bool:
        return any(f.address == address for f in run.result.failures + run.result.skipped)

    @staticmethod
    def _skip(run: _Run, change: Change, reason: str) -> None:
        run.result.skipped.append(
            ResourceFailure(change.address, change.operation.value, reason, status=ChangeStatus.SKIPPED)
        )
        logger.debug(f"Skipped {change.address}: {reason}")

    # =========================================================================
    # Steps
    # =========================================================================

    async def _call(self, operation: str, change: Change, func: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        calls = get_registry().counter("strata_provider_calls_total")
        try:
            result = await call_with_retry(
                func, *args, policy=self.policy, label=f"{operation} {change.address}"
            )
        except TerminalProviderError:
            calls.inc(operation=operation, kind=change.kind, status="error")
            if operation == "create":
                # A create may have made some resources before it was rejected
                await self.repository.fail_operation(change.address)
            elif operation != "read":
                await self.repository.clear_operation(change.address)
            raise
        except ProviderAPIError:
            calls.inc(operation=operation, kind=change.kind, status="error")
            raise
        calls.inc(operation=operation, kind=change.kind, status="ok")
        return result

    async def _destroy(self, change: Change) -> None:
        record = await self.repository.get_record(change.address)
        if record is None:
            logger.info(f"{change.address} has no state record, nothing to destroy")
            return

        remote = await self._call("read", change, self.provider.read, record.kind, record.remote_id)
        if remote is None:
            await self.repository.delete_record(change.address)
            logger.info(f"{log_prefix('🧹')} {change.address} ({record.remote_id}) already gone")
            return

        await self.repository.begin_operation(
            JournalEntry(
                address=change.address,
                kind=record.kind,
                name=record.name,
                operation="delete",
                attributes=record.attributes,
                dependencies=record.dependencies,
            )
        )
        await self._call("delete", change, self.provider.delete, record.kind, record.remote_id)
        await self.repository.delete_record(change.address)
        logger.info(f"{log_prefix('✅')} Destroyed {change.address} ({record.remote_id})")

    async def _forward(self, change: Change) -> None:
        attributes = await self._resolve(change)
        record = await self.repository.get_record(change.address)
        journal = JournalEntry(
            address=change.address,
            kind=change.kind,
            name=change.name,
            operation="create",
            attributes=attributes,
            dependencies=change.dependencies,
        )

        if record is None:
            await self.repository.begin_operation(journal)
            remote = await self._call(
                "create", change, self.provider.create, change.kind, change.name, attributes
            )
            await self.repository.save_record(
                StateRecord(
                    kind=change.kind,
                    name=change.name,
                    remote_id=remote.remote_id,
                    attributes=attributes,
                    outputs=remote.outputs,
                    dependencies=list(change.dependencies),
                )
            )
            logger.info(f"{log_prefix('✅')} Created {change.address} ({remote.remote_id})")
            return

        keys = set(attributes) | set(record.attributes)
        changed = {k for k in keys if attributes.get(k) != record.attributes.get(k)}
        outputs = record.outputs
        if changed:
            journal.operation = "update"
            await self.repository.begin_operation(journal)
            remote = await self._call(
                "update", change, self.provider.update, change.kind, record.remote_id, attributes, changed
            )
            outputs = remote.outputs
        await self.repository.save_record(
            StateRecord(
                kind=change.kind,
                name=change.name,
                remote_id=record.remote_id,
                attributes=attributes,
                outputs=outputs,
                dependencies=list(change.dependencies),
                created_at=record.created_at,
            )
        )
        logger.info(f"{log_prefix('✅')} Updated {change.address}: {', '.join(sorted(changed)) or 'state only'}")

    async def _resolve(self, change: Change) -> dict[str, Any]:
        """Resolve resource references from the records of completed dependencies."""
        records = await self.repository.records_by_address()

        def resolve(ref: Reference) -> Any:
            record = records.get(ref.address)
            if record is None:
                raise UnresolvedReferenceError(change.address, str(ref), "dependency has no state record")
            return record.value_of(ref.attribute)

        return substitute(change.declared, resolve)
