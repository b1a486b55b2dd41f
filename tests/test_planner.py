"""
Tests for the planner.

Tests:
- Ordering of creates and destroys
- Idempotence after apply
- Update vs replace classification and unknown values
- Remote-unique attribute conflicts
- Drift and interrupted-run reconciliation during refresh
- Dependents of replaced or destroyed resources are replaced with them
"""

from __future__ import annotations

from pathlib import Path

import pytest

from strata.core.exceptions import AttributeConflictError
from strata.core.types import UNKNOWN, Operation
from strata.engine.engine import Engine
from strata.providers.local import LocalProvider
from strata.state.models import FAILED_CREATE, JournalEntry
from strata.state.repository import StateRepository


def _ops(plan) -> list[tuple[str, Operation]]:
    return [(c.address, c.operation) for c in plan.changes]


@pytest.mark.asyncio
async def test_network_then_subnet(engine: Engine, network_and_subnet: Path) -> None:
    plan = await engine.plan(network_and_subnet)

    assert _ops(plan) == [("network.main", Operation.CREATE), ("subnet.public", Operation.CREATE)]
    assert plan.get("network.main").reason == "not in state"
    assert plan.get("subnet.public").after["network_id"] == UNKNOWN
    assert plan.has_changes


@pytest.mark.asyncio
async def test_destroy_plan_is_reverse(engine: Engine, network_and_subnet: Path) -> None:
    await engine.apply(network_and_subnet)

    plan = await engine.planner.plan(engine.load(network_and_subnet)[1], destroy=True)

    assert plan.destroy
    assert _ops(plan) == [("subnet.public", Operation.DESTROY), ("network.main", Operation.DESTROY)]


@pytest.mark.asyncio
async def test_plan_after_apply_is_empty(engine: Engine, network_and_subnet: Path) -> None:
    _, result = await engine.apply(network_and_subnet)
    assert result.success

    first = await engine.plan(network_and_subnet)
    second = await engine.plan(network_and_subnet)
    for plan in (first, second):
        assert not plan.has_changes
        assert {c.operation for c in plan.changes} == {Operation.NOOP}


@pytest.mark.asyncio
async def test_updatable_change_is_update(engine: Engine, write_declaration, network_and_subnet: Path) -> None:
    await engine.apply(network_and_subnet)
    write_declaration(
        network_and_subnet.joinpath("main.yaml").read_text().replace(
            "cidr_block: 10.0.0.0/16", "cidr_block: 10.0.0.0/16\n      tags: {Team: ci}"
        )
    )

    plan = await engine.plan(network_and_subnet)

    assert _ops(plan) == [("network.main", Operation.UPDATE), ("subnet.public", Operation.NOOP)]
    assert plan.get("network.main").reason == "attributes changed: tags"


@pytest.mark.asyncio
async def test_replace_propagates_unknown(engine: Engine, write_declaration, network_and_subnet: Path) -> None:
    await engine.apply(network_and_subnet)
    write_declaration(
        network_and_subnet.joinpath("main.yaml").read_text().replace("10.0.0.0/16", "10.1.0.0/16")
    )

    plan = await engine.plan(network_and_subnet)

    assert _ops(plan) == [("network.main", Operation.REPLACE), ("subnet.public", Operation.REPLACE)]
    subnet = plan.get("subnet.public")
    assert subnet.after["network_id"] == UNKNOWN
    assert subnet.reason == "cannot update in place: network_id"
    assert subnet.prior_dependencies == ["network.main"]


@pytest.mark.asyncio
async def test_removed_resource_destroyed_first(engine: Engine, write_declaration, network_and_subnet: Path) -> None:
    await engine.apply(network_and_subnet)
    write_declaration(
        """
        resources:
          network:
            main:
              cidr_block: 10.0.0.0/16
            extra:
              cidr_block: 10.2.0.0/16
        """
    )

    plan = await engine.plan(network_and_subnet)

    assert _ops(plan) == [
        ("subnet.public", Operation.DESTROY),
        ("network.extra", Operation.CREATE),
        ("network.main", Operation.NOOP),
    ]
    assert plan.get("subnet.public").reason == "no longer declared"


SERVER = """
resources:
  network:
    main:
      cidr_block: 10.0.0.0/16
  subnet:
    public:
      network_id: ${network.main.id}
      cidr_block: 10.0.1.0/24
  security_group:
    web:
      network_id: ${network.main.id}
      group_name: web
  instance:
    web:
      image_id: ami-123
      instance_type: t3.micro
      subnet_id: ${subnet.public.id}
      security_group_ids: ["${security_group.web.id}"]
  elastic_ip:
    web:
      instance_id: ${instance.web.id}
"""


class TestDependentsOfReplaced:
    @pytest.mark.asyncio
    async def test_update_escalates_to_replace(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(SERVER)
        await engine.apply(path)
        write_declaration(SERVER.replace("t3.micro", "t3.small"))

        plan = await engine.plan(path)

        assert [(c.address, c.operation) for c in plan.actionable] == [
            ("instance.web", Operation.REPLACE),
            ("elastic_ip.web", Operation.REPLACE),
        ]
        assert plan.get("instance.web").reason == "cannot update in place: instance_type"
        eip = plan.get("elastic_ip.web")
        assert eip.reason == "depends on replaced instance.web"
        assert eip.after["instance_id"] == UNKNOWN
        assert eip.prior_dependencies == ["instance.web"]

    @pytest.mark.asyncio
    async def test_escalation_cascades(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(SERVER)
        await engine.apply(path)
        write_declaration(
            SERVER.replace("      group_name: web\n", "      group_name: web\n      ingress: [{from_port: 443}]\n")
        )

        plan = await engine.plan(path)

        assert [(c.address, c.operation) for c in plan.actionable] == [
            ("security_group.web", Operation.REPLACE),
            ("instance.web", Operation.REPLACE),
            ("elastic_ip.web", Operation.REPLACE),
        ]
        assert plan.get("instance.web").reason == "depends on replaced security_group.web"
        assert plan.get("elastic_ip.web").reason == "depends on replaced instance.web"

    @pytest.mark.asyncio
    async def test_moving_off_removed_resource(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(SERVER)
        await engine.apply(path)
        write_declaration(
            SERVER.replace(
                "  security_group:\n    web:\n      network_id: ${network.main.id}\n      group_name: web\n", ""
            ).replace('security_group_ids: ["${security_group.web.id}"]', "security_group_ids: []")
        )

        plan = await engine.plan(path)

        assert plan.changes[0].address == "security_group.web"
        assert plan.changes[0].operation == Operation.DESTROY
        assert plan.get("instance.web").operation == Operation.REPLACE
        assert plan.get("instance.web").reason == "depends on destroyed security_group.web"

        _, result = await engine.apply(path)
        assert result.success
        assert not (await engine.plan(path)).has_changes

    @pytest.mark.asyncio
    async def test_update_without_old_reference_stays_update(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(SERVER)
        await engine.apply(path)
        write_declaration(
            SERVER.replace("      instance_type: t3.micro\n", "      instance_type: t3.micro\n      tags: {Role: ci}\n")
        )

        plan = await engine.plan(path)

        assert [(c.address, c.operation) for c in plan.actionable] == [("instance.web", Operation.UPDATE)]


class TestConflicts:
    @pytest.mark.asyncio
    async def test_duplicate_network_cidr(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(
            """
            resources:
              network:
                a: {cidr_block: 10.0.0.0/16}
                b: {cidr_block: 10.0.0.0/16}
            """
        )
        with pytest.raises(AttributeConflictError) as exc_info:
            await engine.plan(path)
        assert exc_info.value.addresses == ["network.a", "network.b"]
        assert exc_info.value.attribute == "cidr_block"

    @pytest.mark.asyncio
    async def test_subnet_cidr_scoped_by_network(self, engine: Engine, write_declaration) -> None:
        path = write_declaration(
            """
            resources:
              network:
                a: {cidr_block: 10.0.0.0/16}
                b: {cidr_block: 10.1.0.0/16}
              subnet:
                a1: {network_id: "${network.a.id}", cidr_block: 10.0.1.0/24}
                b1: {network_id: "${network.b.id}", cidr_block: 10.0.1.0/24}
            """
        )
        plan = await engine.plan(path)
        assert len(plan.actionable) == 4

        write_declaration(
            """
            resources:
              network:
                a: {cidr_block: 10.0.0.0/16}
              subnet:
                a1: {network_id: "${network.a.id}", cidr_block: 10.0.1.0/24}
                a2: {network_id: "${network.a.id}", cidr_block: 10.0.1.0/24}
            """
        )
        with pytest.raises(AttributeConflictError):
            await engine.plan(path)


class TestRefresh:
    @pytest.mark.asyncio
    async def test_drift_replans_create(
        self, engine: Engine, provider: LocalProvider, network_and_subnet: Path
    ) -> None:
        await engine.apply(network_and_subnet)
        provider.remove_out_of_band(provider.find_id("subnet.public"))

        report = await engine.planner.refresh()
        assert report.drifted == ["subnet.public"]

        plan = await engine.plan(network_and_subnet)
        assert _ops(plan) == [("network.main", Operation.NOOP), ("subnet.public", Operation.CREATE)]

    @pytest.mark.asyncio
    async def test_no_refresh_keeps_stale_state(
        self, engine: Engine, provider: LocalProvider, network_and_subnet: Path
    ) -> None:
        await engine.apply(network_and_subnet)
        provider.remove_out_of_band(provider.find_id("subnet.public"))

        plan = await engine.plan(network_and_subnet, refresh=False)
        assert not plan.has_changes

    @pytest.mark.asyncio
    async def test_interrupted_create_adopted(
        self,
        engine: Engine,
        provider: LocalProvider,
        repository: StateRepository,
        network_and_subnet: Path,
    ) -> None:
        attributes = {"cidr_block": "10.0.0.0/16", "enable_dns_hostnames": True}
        # Remote call succeeded but the process died before the record write
        await repository.begin_operation(JournalEntry("network.main", "network", "main", "create", attributes))
        created = await provider.create("network", "main", attributes)
        await repository.begin_operation(JournalEntry("subnet.public", "subnet", "public", "create"))

        report = await engine.planner.refresh()

        assert report.adopted == ["network.main"]
        assert report.discarded == ["subnet.public"]
        assert (await repository.get_record("network.main")).remote_id == created.remote_id
        assert await repository.list_pending() == []

        plan = await engine.plan(network_and_subnet)
        assert _ops(plan) == [("network.main", Operation.NOOP), ("subnet.public", Operation.CREATE)]

    @pytest.mark.asyncio
    async def test_failed_create_leftovers_deleted(
        self,
        engine: Engine,
        provider: LocalProvider,
        repository: StateRepository,
        network_and_subnet: Path,
    ) -> None:
        attributes = {"cidr_block": "10.0.0.0/16"}
        # The provider made the network, then rejected a follow-up call
        await repository.begin_operation(JournalEntry("network.main", "network", "main", "create", attributes))
        await provider.create("network", "main", attributes)
        await repository.fail_operation("network.main")
        await repository.begin_operation(JournalEntry("subnet.public", "subnet", "public", FAILED_CREATE))

        report = await engine.planner.refresh()

        assert report.removed == ["network.main"]
        assert report.adopted == []
        assert provider.resources == {}
        assert provider.calls_for("find") == ["network.main", "subnet.public"]
        assert await repository.list_pending() == []
        assert await repository.list_records() == []

        plan = await engine.plan(network_and_subnet)
        assert _ops(plan) == [("network.main", Operation.CREATE), ("subnet.public", Operation.CREATE)]
