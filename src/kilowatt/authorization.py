"""Local authorization list and authorization cache."""

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from ocpp.v16.enums import AuthorizationStatus

from .models import AuthorizationEntry
from .repositories import LocalAuthListRepository

logger = logging.getLogger(__name__)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value


def entry_from_id_tag_info(
    id_tag: str, id_tag_info: dict[str, Any], is_cache: bool = False
) -> AuthorizationEntry:
    """Build an entry from a snake_case ``idTagInfo`` object."""
    return AuthorizationEntry(
        id_tag=id_tag,
        status=id_tag_info.get("status", AuthorizationStatus.invalid),
        expiry_date=_parse_datetime(id_tag_info.get("expiry_date")),
        parent_id_tag=id_tag_info.get("parent_id_tag"),
        is_cache=is_cache,
    )


def id_tag_info(entry: AuthorizationEntry | None) -> dict[str, Any]:
    """Render an entry as a snake_case ``idTagInfo`` object."""
    if entry is None:
        return {"status": AuthorizationStatus.invalid}
    info: dict[str, Any] = {"status": entry.status}
    if entry.expiry_date is not None:
        info["expiry_date"] = entry.expiry_date.isoformat()
    if entry.parent_id_tag is not None:
        info["parent_id_tag"] = entry.parent_id_tag
    return info


class LocalAuthorizationList:
    """
    Id tags the station may authorize without asking the central system.

    The list proper is managed by the central system through SendLocalList and carries
    a version. The cache holds answers to earlier Authorize calls and is cleared by
    ClearCache; a list entry always wins over a cache entry for the same tag.
    """

    def __init__(
        self,
        repo: LocalAuthListRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self.repo = repo
        self._clock = clock

    async def lookup(self, id_tag: str, include_cache: bool = True) -> AuthorizationEntry | None:
        """Return the entry for ``id_tag``; an expired entry comes back as Expired."""
        entry = await self.repo.get(id_tag)
        if entry is None or (entry.is_cache and not include_cache):
            return None
        expiry = _parse_datetime(entry.expiry_date)
        if expiry is not None and expiry <= self._clock():
            entry.status = AuthorizationStatus.expired
        return entry

    async def is_authorized(self, id_tag: str, include_cache: bool = True) -> bool:
        entry = await self.lookup(id_tag, include_cache)
        return entry is not None and entry.status == AuthorizationStatus.accepted

    async def version(self) -> int:
        return await self.repo.get_version()

    async def replace(self, entries: list[AuthorizationEntry], version: int) -> None:
        """Full update: the list becomes exactly ``entries``."""
        await self.repo.clear_list()
        if entries:
            await self.repo.upsert_many(entries)
        await self.repo.set_version(version)
        logger.info(f"Local authorization list replaced: {len(entries)} entries, v{version}")

    async def merge(
        self, entries: list[AuthorizationEntry], removals: list[str], version: int
    ) -> None:
        """Differential update: upsert ``entries`` and drop ``removals``."""
        if entries:
            await self.repo.upsert_many(entries)
        if removals:
            await self.repo.delete_many(removals)
        await self.repo.set_version(version)
        logger.info(
            f"Local authorization list updated: {len(entries)} upserted, "
            f"{len(removals)} removed, v{version}"
        )

    async def cache(self, id_tag: str, info: dict[str, Any]) -> None:
        existing = await self.repo.get(id_tag)
        if existing is not None and not existing.is_cache:
            return
        await self.repo.upsert_many([entry_from_id_tag_info(id_tag, info, is_cache=True)])

    async def clear_cache(self) -> None:
        await self.repo.clear_cache()
