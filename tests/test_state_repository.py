"""
Tests for the SQLite state repository.

Tests:
- Record CRUD and ordering
- Journal entries cleared with record writes
- Outputs
- Corruption detection
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from strata.core.exceptions import StateCorruptionError
from strata.state.models import FAILED_CREATE, JournalEntry, OutputValue, StateRecord
from strata.state.repository import StateRepository


def _record(kind: str = "network", name: str = "main", remote_id: str = "vpc-1", **kwargs) -> StateRecord:
    return StateRecord(kind=kind, name=name, remote_id=remote_id, **kwargs)


@pytest.mark.asyncio
async def test_save_and_get(repository: StateRepository) -> None:
    record = _record(attributes={"cidr_block": "10.0.0.0/16"}, outputs={"default_security_group_id": "sg-1"})
    await repository.save_record(record)

    loaded = await repository.get_record("network.main")
    assert loaded is not None
    assert loaded.remote_id == "vpc-1"
    assert loaded.attributes == {"cidr_block": "10.0.0.0/16"}
    assert loaded.value_of("id") == "vpc-1"
    assert loaded.value_of("default_security_group_id") == "sg-1"
    assert loaded.value_of("cidr_block") == "10.0.0.0/16"


@pytest.mark.asyncio
async def test_list_and_delete(repository: StateRepository) -> None:
    await repository.save_record(_record("subnet", "b", "subnet-1", dependencies=["network.main"]))
    await repository.save_record(_record())

    records = await repository.list_records()
    assert [r.address for r in records] == ["network.main", "subnet.b"]
    assert (await repository.list_records(kind="subnet"))[0].dependencies == ["network.main"]

    assert await repository.delete_record("subnet.b") is True
    assert await repository.delete_record("subnet.b") is False
    assert list(await repository.records_by_address()) == ["network.main"]


@pytest.mark.asyncio
async def test_record_write_clears_journal(repository: StateRepository) -> None:
    await repository.begin_operation(
        JournalEntry("network.main", "network", "main", "create", attributes={"cidr_block": "10.0.0.0/16"})
    )
    await repository.begin_operation(JournalEntry("subnet.a", "subnet", "a", "create"))

    pending = await repository.list_pending()
    assert [e.address for e in pending] == ["network.main", "subnet.a"]
    assert pending[0].attributes == {"cidr_block": "10.0.0.0/16"}

    await repository.save_record(_record())
    assert [e.address for e in await repository.list_pending()] == ["subnet.a"]

    await repository.clear_operation("subnet.a")
    assert await repository.list_pending() == []


@pytest.mark.asyncio
async def test_failed_create_keeps_entry(repository: StateRepository) -> None:
    await repository.begin_operation(
        JournalEntry("security_group.web", "security_group", "web", "create", attributes={"group_name": "web"})
    )

    await repository.fail_operation("security_group.web")

    pending = await repository.list_pending()
    assert [(e.address, e.operation) for e in pending] == [("security_group.web", FAILED_CREATE)]
    assert pending[0].attributes == {"group_name": "web"}


@pytest.mark.asyncio
async def test_state_survives_reopen(state_path: Path, repository: StateRepository) -> None:
    await repository.save_record(_record())
    reopened = StateRepository(state_path)
    assert (await reopened.get_record("network.main")) is not None


@pytest.mark.asyncio
async def test_outputs_replaced(repository: StateRepository) -> None:
    await repository.replace_outputs([OutputValue("a", 1), OutputValue("b", {"k": [1, 2]}, sensitive=True)])
    await repository.replace_outputs([OutputValue("b", "new")])

    assert await repository.get_output("a") is None
    outputs = await repository.list_outputs()
    assert [(o.name, o.value, o.sensitive) for o in outputs] == [("b", "new", False)]


@pytest.mark.asyncio
async def test_clear_all(repository: StateRepository) -> None:
    await repository.save_record(_record())
    await repository.replace_outputs([OutputValue("a", 1)])
    await repository.clear_all()
    assert await repository.list_records() == []
    assert await repository.list_outputs() == []


class TestCorruption:
    @pytest.mark.asyncio
    async def test_not_a_database(self, tmp_path: Path) -> None:
        path = tmp_path / "state.db"
        path.write_bytes(b"this is not sqlite" * 100)
        with pytest.raises(StateCorruptionError):
            await StateRepository(path).initialize()

    @pytest.mark.asyncio
    async def test_newer_schema_version(self, tmp_path: Path) -> None:
        path = tmp_path / "state.db"
        with sqlite3.connect(path) as conn:
            conn.execute("CREATE TABLE schema_version (version INTEGER PRIMARY KEY)")
            conn.execute("INSERT INTO schema_version VALUES (99)")
        with pytest.raises(StateCorruptionError, match="newer than supported"):
            await StateRepository(path).initialize()

    @pytest.mark.asyncio
    async def test_undecodable_attributes(self, state_path: Path, repository: StateRepository) -> None:
        await repository.save_record(_record())
        with sqlite3.connect(state_path) as conn:
            conn.execute("UPDATE resources SET attributes = '{broken' WHERE address = 'network.main'")

        with pytest.raises(StateCorruptionError, match="attributes"):
            await repository.get_record("network.main")
