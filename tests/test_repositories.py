"""Unit tests for repository classes."""

from datetime import UTC, datetime

import pytest

from kilowatt.models import AuthorizationEntry, PersistedConnector
from kilowatt.repositories import (
    ConfigurationRepository,
    ConnectorStateRepository,
    LocalAuthListRepository,
)


@pytest.mark.unit
class TestLocalAuthListRepository:
    """Test local authorization list operations."""

    async def test_upsert_and_get(self, db_connection):
        repo = LocalAuthListRepository(db_connection)

        await repo.upsert_many(
            [AuthorizationEntry("TAG1", "Accepted", expiry_date="2030-01-01T00:00:00+00:00")]
        )
        result = await repo.get("TAG1")

        assert result.status == "Accepted"
        assert result.expiry_date == datetime(2030, 1, 1, tzinfo=UTC)
        assert result.is_cache is False

    async def test_get_missing(self, db_connection):
        assert await LocalAuthListRepository(db_connection).get("NOPE") is None

    async def test_upsert_updates_existing(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        await repo.upsert_many([AuthorizationEntry("TAG1", "Accepted")])

        await repo.upsert_many([AuthorizationEntry("TAG1", "Blocked", parent_id_tag="FLEET")])

        result = await repo.get("TAG1")
        assert result.status == "Blocked"
        assert result.parent_id_tag == "FLEET"

    async def test_clear_list_keeps_cache(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        await repo.upsert_many(
            [
                AuthorizationEntry("LIST1", "Accepted"),
                AuthorizationEntry("CACHE1", "Accepted", is_cache=True),
            ]
        )

        await repo.clear_list()

        assert [e.id_tag for e in await repo.get_all()] == ["CACHE1"]

    async def test_clear_cache_keeps_list(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        await repo.upsert_many(
            [
                AuthorizationEntry("LIST1", "Accepted"),
                AuthorizationEntry("CACHE1", "Accepted", is_cache=True),
            ]
        )

        await repo.clear_cache()

        assert [e.id_tag for e in await repo.get_all()] == ["LIST1"]

    async def test_delete_many_only_touches_list(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        await repo.upsert_many(
            [
                AuthorizationEntry("LIST1", "Accepted"),
                AuthorizationEntry("CACHE1", "Accepted", is_cache=True),
            ]
        )

        await repo.delete_many(["LIST1", "CACHE1"])

        assert [e.id_tag for e in await repo.get_all()] == ["CACHE1"]

    async def test_get_all_without_cache(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        await repo.upsert_many(
            [
                AuthorizationEntry("B", "Accepted"),
                AuthorizationEntry("A", "Accepted"),
                AuthorizationEntry("C", "Accepted", is_cache=True),
            ]
        )

        assert [e.id_tag for e in await repo.get_all(include_cache=False)] == ["A", "B"]

    async def test_version(self, db_connection):
        repo = LocalAuthListRepository(db_connection)
        assert await repo.get_version() == 0

        await repo.set_version(3)
        await repo.set_version(7)

        assert await repo.get_version() == 7


@pytest.mark.unit
class TestConfigurationRepository:
    async def test_set_and_load(self, db_connection):
        repo = ConfigurationRepository(db_connection)

        await repo.set("HeartbeatInterval", "120")
        await repo.set("HeartbeatInterval", "90")
        await repo.set("MeterValueSampleInterval", "30")

        assert await repo.load() == {
            "HeartbeatInterval": "90",
            "MeterValueSampleInterval": "30",
        }


@pytest.mark.unit
class TestConnectorStateRepository:
    """Test durable connector records."""

    async def test_save_and_load(self, db_connection):
        repo = ConnectorStateRepository(db_connection)
        started = datetime(2026, 3, 1, 8, 30, tzinfo=UTC)

        await repo.save(
            PersistedConnector(
                connector_id=1,
                status="Charging",
                availability="Operative",
                transaction_id=42,
                id_tag="TAG1",
                meter_start_wh=1000,
                started_at=started,
            )
        )

        record = (await repo.load())[1]
        assert record.status == "Charging"
        assert record.transaction_id == 42
        assert record.meter_start_wh == 1000
        assert record.meter_stop_wh is None
        assert record.started_at == started
        assert record.error_code == "NoError"
        assert record.updated_at is not None

    async def test_save_replaces_record(self, db_connection):
        repo = ConnectorStateRepository(db_connection)
        await repo.save(
            PersistedConnector(1, "Charging", "Operative", transaction_id=42, id_tag="TAG1")
        )

        await repo.save(PersistedConnector(1, "Available", "Operative"))

        record = (await repo.load())[1]
        assert record.status == "Available"
        assert record.transaction_id is None
        assert record.id_tag is None

    async def test_save_all(self, db_connection):
        repo = ConnectorStateRepository(db_connection)

        await repo.save_all(
            [
                PersistedConnector(0, "Unavailable", "Inoperative"),
                PersistedConnector(1, "Faulted", "Operative", error_code="GroundFailure"),
                PersistedConnector(2, "Available", "Operative"),
            ]
        )

        records = await repo.load()
        assert list(records) == [0, 1, 2]
        assert records[0].availability == "Inoperative"
        assert records[1].error_code == "GroundFailure"

    async def test_load_empty(self, db_connection):
        assert await ConnectorStateRepository(db_connection).load() == {}
