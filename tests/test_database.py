"""Tests for the SQLite connection and schema versioning."""

import pytest

from kilowatt.database import Database
from kilowatt.database.connection import SCHEMA_VERSION
from kilowatt.errors import ConfigurationError


@pytest.mark.unit
class TestDatabase:
    async def test_fresh_database_gets_current_schema(self, tmp_path):
        db = Database(tmp_path / "state" / "kilowatt.db")

        await db.initialize_schema()

        assert (tmp_path / "state" / "kilowatt.db").exists()
        assert await db.schema_version() == SCHEMA_VERSION
        conn = await db.connect()
        cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row["name"] for row in await cursor.fetchall()}
        assert {"connector_state", "local_auth_list", "configuration_key"} <= tables
        await db.disconnect()

    async def test_initialize_is_idempotent(self, temp_db, db_connection):
        await db_connection.execute(
            "INSERT INTO configuration_key (key, value) VALUES ('HeartbeatInterval', '90')"
        )
        await db_connection.commit()

        await temp_db.initialize_schema()

        cursor = await db_connection.execute("SELECT value FROM configuration_key")
        assert [row["value"] for row in await cursor.fetchall()] == ["90"]

    async def test_newer_schema_is_refused(self, tmp_path):
        db = Database(tmp_path / "kilowatt.db")
        conn = await db.connect()
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION + 1}")
        await conn.commit()

        with pytest.raises(ConfigurationError, match="schema version"):
            await db.initialize_schema()
        await db.disconnect()

    async def test_durable_pragmas(self, db_connection):
        cursor = await db_connection.execute("PRAGMA synchronous")
        assert (await cursor.fetchone())[0] == 2
        cursor = await db_connection.execute("PRAGMA journal_mode")
        assert (await cursor.fetchone())[0] == "wal"
