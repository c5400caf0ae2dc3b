"""Repository for the local authorization list and authorization cache."""

from ..models import AuthorizationEntry
from .base import BaseRepository


class LocalAuthListRepository(BaseRepository):
    """Handles database operations for locally known id tags."""

    async def get(self, id_tag: str) -> AuthorizationEntry | None:
        row = await self._fetchone("SELECT * FROM local_auth_list WHERE id_tag = ?", (id_tag,))
        if row:
            return self._row_to_model(row)
        return None

    async def get_all(self, include_cache: bool = True) -> list[AuthorizationEntry]:
        query = "SELECT * FROM local_auth_list"
        if not include_cache:
            query += " WHERE is_cache = 0"
        rows = await self._fetchall(query + " ORDER BY id_tag")
        return [self._row_to_model(row) for row in rows]

    async def upsert_many(self, entries: list[AuthorizationEntry]) -> None:
        """Insert or update entries; a list entry always overrides a cached one."""
        await self._executemany_and_commit(
            """
            INSERT INTO local_auth_list (
                id_tag, status, expiry_date, parent_id_tag, is_cache, updated_at
            ) VALUES (?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
            ON CONFLICT(id_tag) DO UPDATE SET
                status = excluded.status,
                expiry_date = excluded.expiry_date,
                parent_id_tag = excluded.parent_id_tag,
                is_cache = excluded.is_cache,
                updated_at = CURRENT_TIMESTAMP
            """,
            [
                (e.id_tag, e.status, e.expiry_date, e.parent_id_tag, int(e.is_cache))
                for e in entries
            ],
        )

    async def delete_many(self, id_tags: list[str]) -> None:
        await self._executemany_and_commit(
            "DELETE FROM local_auth_list WHERE id_tag = ? AND is_cache = 0",
            [(tag,) for tag in id_tags],
        )

    async def clear_list(self) -> None:
        """Remove every list entry, leaving the cache alone."""
        await self._execute_and_commit("DELETE FROM local_auth_list WHERE is_cache = 0")

    async def clear_cache(self) -> None:
        await self._execute_and_commit("DELETE FROM local_auth_list WHERE is_cache = 1")

    async def get_version(self) -> int:
        row = await self._fetchone("SELECT version FROM local_auth_list_version WHERE id = 1")
        return row["version"] if row else 0

    async def set_version(self, version: int) -> None:
        await self._execute_and_commit(
            """
            INSERT INTO local_auth_list_version (id, version) VALUES (1, ?)
            ON CONFLICT(id) DO UPDATE SET version = excluded.version
            """,
            (version,),
        )

    def _row_to_model(self, row) -> AuthorizationEntry:
        return AuthorizationEntry(
            id_tag=row["id_tag"],
            status=row["status"],
            expiry_date=row["expiry_date"],
            parent_id_tag=row["parent_id_tag"],
            is_cache=bool(row["is_cache"]),
        )
