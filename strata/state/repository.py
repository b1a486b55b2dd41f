"""
Strata State - Repository.

SQLite persistence for resource state, outputs and the apply journal.

Every write happens in one transaction under a single asyncio.Lock, so
a record write and the clearing of its journal entry are atomic.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import aiosqlite
from loguru import logger

from strata.config.constants import DEFAULT_STATE_PATH
from strata.core.exceptions import StateCorruptionError
from strata.state.models import FAILED_CREATE, JournalEntry, OutputValue, StateRecord
from strata.utils.logger import log_prefix


class StateRepository:
    """
    SQLite-based state persistence.

    Stores one record per applied resource, the stored outputs and
    journal entries for remote calls in flight.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str | None = None):
        """
        Initialize the repository.

        Args:
            db_path: Path to SQLite database (default: ~/.strata/state.db)
        """
        self._db_path = Path(db_path) if db_path is not None else DEFAULT_STATE_PATH
        self._initialized = False
        self._write_lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        """Get the database path."""
        return self._db_path

    @asynccontextmanager
    async def _connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a connection, translating unreadable databases to StateCorruptionError."""
        try:
            async with aiosqlite.connect(self._db_path) as db:
                db.row_factory = aiosqlite.Row
                yield db
        except sqlite3.DatabaseError as e:
            raise StateCorruptionError(str(self._db_path), str(e)) from e

    async def initialize(self) -> None:
        """Initialize the database schema."""
        if self._initialized:
            return

        self._db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._write_lock, self._connect() as db:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """)

            cursor = await db.execute("SELECT version FROM schema_version LIMIT 1")
            row = await cursor.fetchone()
            current_version = row[0] if row else 0

            if current_version > self.SCHEMA_VERSION:
                raise StateCorruptionError(
                    str(self._db_path),
                    f"schema version {current_version} is newer than supported {self.SCHEMA_VERSION}",
                )
            if current_version < self.SCHEMA_VERSION:
                await self._migrate(db, current_version)

            await db.commit()

        self._initialized = True
        logger.debug(f"{log_prefix('🗄️')} State repository initialized at {self._db_path}")

    async def _migrate(self, db: aiosqlite.Connection, from_version: int) -> None:
        """Run database migrations."""
        if from_version < 1:
            await db.execute("""
                CREATE TABLE IF NOT EXISTS resources (
                    address TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    remote_id TEXT NOT NULL,
                    attributes TEXT NOT NULL,
                    outputs TEXT NOT NULL,
                    dependencies TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE INDEX IF NOT EXISTS idx_resources_kind
                ON resources(kind)
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS outputs (
                    name TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    sensitive INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
            """)

            await db.execute("""
                CREATE TABLE IF NOT EXISTS journal (
                    address TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    name TEXT NOT NULL,
                    operation TEXT NOT NULL,
                    attributes TEXT NOT NULL,
                    dependencies TEXT NOT NULL,
                    started_at TEXT NOT NULL
                )
            """)

            await db.execute("DELETE FROM schema_version")
            await db.execute(
                "INSERT INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

            logger.info("Migrated state database to version 1")

    # =========================================================================
    # Resources
    # =========================================================================

    async def save_record(self, record: StateRecord) -> None:
        """Save or update a record and clear its journal entry in one transaction."""
        await self.initialize()

        record.updated_at = datetime.now()
        async with self._write_lock, self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO resources (
                    address, kind, name, remote_id, attributes, outputs,
                    dependencies, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.address,
                    record.kind,
                    record.name,
                    record.remote_id,
                    json.dumps(record.attributes, sort_keys=True),
                    json.dumps(record.outputs, sort_keys=True),
                    json.dumps(sorted(record.dependencies)),
                    record.created_at.isoformat(),
                    record.updated_at.isoformat(),
                ),
            )
            await db.execute("DELETE FROM journal WHERE address = ?", (record.address,))
            await db.commit()

    async def get_record(self, address: str) -> StateRecord | None:
        """Get a record by address."""
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM resources WHERE address = ?", (address,))
            row = await cursor.fetchone()
            return self._row_to_record(row) if row else None

    async def delete_record(self, address: str) -> bool:
        """Delete a record and its journal entry in one transaction."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            cursor = await db.execute("DELETE FROM resources WHERE address = ?", (address,))
            await db.execute("DELETE FROM journal WHERE address = ?", (address,))
            await db.commit()
            return cursor.rowcount > 0

    async def list_records(self, kind: str | None = None) -> list[StateRecord]:
        """List records, optionally filtered by kind, ordered by address."""
        await self.initialize()

        query = "SELECT * FROM resources"
        params: list[str] = []
        if kind:
            query += " WHERE kind = ?"
            params.append(kind)
        query += " ORDER BY address"

        async with self._connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            return [self._row_to_record(row) for row in rows]

    async def records_by_address(self) -> dict[str, StateRecord]:
        return {r.address: r for r in await self.list_records()}

    # =========================================================================
    # Journal
    # =========================================================================

    async def begin_operation(self, entry: JournalEntry) -> None:
        """Record that a remote call is about to be issued."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO journal (
                    address, kind, name, operation, attributes, dependencies, started_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.address,
                    entry.kind,
                    entry.name,
                    entry.operation,
                    json.dumps(entry.attributes, sort_keys=True),
                    json.dumps(sorted(entry.dependencies)),
                    entry.started_at.isoformat(),
                ),
            )
            await db.commit()

    async def clear_operation(self, address: str) -> None:
        """Drop the journal entry of an address."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            await db.execute("DELETE FROM journal WHERE address = ?", (address,))
            await db.commit()

    async def fail_operation(self, address: str) -> None:
        """Keep the journal entry of a rejected create so refresh can clean up after it."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            await db.execute("UPDATE journal SET operation = ? WHERE address = ?", (FAILED_CREATE, address))
            await db.commit()

    async def list_pending(self) -> list[JournalEntry]:
        """Journal entries left behind by interrupted runs."""
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM journal ORDER BY address")
            rows = await cursor.fetchall()
            return [
                JournalEntry(
                    address=row["address"],
                    kind=row["kind"],
                    name=row["name"],
                    operation=row["operation"],
                    attributes=self._loads(row["attributes"], "attributes"),
                    dependencies=self._loads(row["dependencies"], "dependencies"),
                    started_at=datetime.fromisoformat(row["started_at"]),
                )
                for row in rows
            ]

    # =========================================================================
    # Outputs
    # =========================================================================

    async def replace_outputs(self, outputs: list[OutputValue]) -> None:
        """Replace all stored outputs."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            await db.execute("DELETE FROM outputs")
            for output in outputs:
                await db.execute(
                    "INSERT INTO outputs (name, value, sensitive, updated_at) VALUES (?, ?, ?, ?)",
                    (
                        output.name,
                        json.dumps(output.value),
                        int(output.sensitive),
                        output.updated_at.isoformat(),
                    ),
                )
            await db.commit()

    async def get_output(self, name: str) -> OutputValue | None:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM outputs WHERE name = ?", (name,))
            row = await cursor.fetchone()
            return self._row_to_output(row) if row else None

    async def list_outputs(self) -> list[OutputValue]:
        await self.initialize()

        async with self._connect() as db:
            cursor = await db.execute("SELECT * FROM outputs ORDER BY name")
            rows = await cursor.fetchall()
            return [self._row_to_output(row) for row in rows]

    async def clear_all(self) -> None:
        """Clear all state data (for testing)."""
        await self.initialize()

        async with self._write_lock, self._connect() as db:
            await db.execute("DELETE FROM resources")
            await db.execute("DELETE FROM outputs")
            await db.execute("DELETE FROM journal")
            await db.commit()

    # =========================================================================
    # Row conversion
    # =========================================================================

    def _loads(self, raw: str, column: str) -> Any:
        try:
            return json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise StateCorruptionError(str(self._db_path), f"column '{column}' is not valid JSON") from e

    def _row_to_record(self, row: aiosqlite.Row) -> StateRecord:
        """Convert a database row to StateRecord."""
        try:
            return StateRecord(
                kind=row["kind"],
                name=row["name"],
                remote_id=row["remote_id"],
                attributes=self._loads(row["attributes"], "attributes"),
                outputs=self._loads(row["outputs"], "outputs"),
                dependencies=self._loads(row["dependencies"], "dependencies"),
                created_at=datetime.fromisoformat(row["created_at"]),
                updated_at=datetime.fromisoformat(row["updated_at"]),
            )
        except ValueError as e:
            raise StateCorruptionError(str(self._db_path), f"invalid timestamp: {e}") from e

    def _row_to_output(self, row: aiosqlite.Row) -> OutputValue:
        return OutputValue(
            name=row["name"],
            value=self._loads(row["value"], "value"),
            sensitive=bool(row["sensitive"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
