"""Repository for durable connector records."""

from ..models import PersistedConnector
from .base import BaseRepository


class ConnectorStateRepository(BaseRepository):
    """Stores the part of each connector record that must survive a restart."""

    async def load(self) -> dict[int, PersistedConnector]:
        """Return every stored connector record keyed by connector id."""
        rows = await self._fetchall("SELECT * FROM connector_state ORDER BY connector_id")
        return {row["connector_id"]: self._row_to_model(row) for row in rows}

    async def save(self, record: PersistedConnector) -> None:
        """Insert or replace one connector record."""
        await self._execute_and_commit(self._UPSERT, self._params(record))

    async def save_all(self, records: list[PersistedConnector]) -> None:
        await self._executemany_and_commit(self._UPSERT, [self._params(r) for r in records])

    _UPSERT = """
        INSERT INTO connector_state (
            connector_id, status, availability, error_code, transaction_id,
            id_tag, meter_start_wh, meter_stop_wh, started_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
        ON CONFLICT(connector_id) DO UPDATE SET
            status = excluded.status,
            availability = excluded.availability,
            error_code = excluded.error_code,
            transaction_id = excluded.transaction_id,
            id_tag = excluded.id_tag,
            meter_start_wh = excluded.meter_start_wh,
            meter_stop_wh = excluded.meter_stop_wh,
            started_at = excluded.started_at,
            updated_at = CURRENT_TIMESTAMP
    """

    @staticmethod
    def _params(record: PersistedConnector) -> tuple:
        return (
            record.connector_id,
            record.status,
            record.availability,
            record.error_code,
            record.transaction_id,
            record.id_tag,
            record.meter_start_wh,
            record.meter_stop_wh,
            record.started_at,
        )

    def _row_to_model(self, row) -> PersistedConnector:
        return PersistedConnector(
            connector_id=row["connector_id"],
            status=row["status"],
            availability=row["availability"],
            error_code=row["error_code"],
            transaction_id=row["transaction_id"],
            id_tag=row["id_tag"],
            meter_start_wh=row["meter_start_wh"],
            meter_stop_wh=row["meter_stop_wh"],
            started_at=row["started_at"],
            updated_at=row["updated_at"],
        )
