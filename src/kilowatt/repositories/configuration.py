"""Repository for runtime configuration keys changed by the central system."""

from .base import BaseRepository


class ConfigurationRepository(BaseRepository):
    async def load(self) -> dict[str, str]:
        rows = await self._fetchall("SELECT key, value FROM configuration_key")
        return {row["key"]: row["value"] for row in rows}

    async def set(self, key: str, value: str) -> None:
        await self._execute_and_commit(
            """
            INSERT INTO configuration_key (key, value, updated_at)
            VALUES (?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                updated_at = CURRENT_TIMESTAMP
            """,
            (key, value),
        )
