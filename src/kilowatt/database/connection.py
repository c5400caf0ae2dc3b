"""SQLite storage for the station's durable state."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

import aiosqlite

from ..errors import ConfigurationError

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

# Bumped whenever schema.sql changes shape; stored in PRAGMA user_version.
SCHEMA_VERSION = 1

logger = logging.getLogger(__name__)

# DATETIME columns hold ISO 8601 text. CURRENT_TIMESTAMP defaults parse the same way.
sqlite3.register_adapter(datetime, datetime.isoformat)
sqlite3.register_converter("DATETIME", lambda raw: datetime.fromisoformat(raw.decode()))


class Database:
    """
    Owns the station's single SQLite connection.

    Connector records carry the id of a running transaction, so every commit is
    flushed to storage (``synchronous=FULL``): after a power cut the station must
    come back knowing which transaction it was in.
    """

    def __init__(self, db_path: str | Path = "kilowatt.db"):
        self.db_path = str(db_path)
        self.connection: aiosqlite.Connection | None = None

    async def connect(self) -> aiosqlite.Connection:
        if self.connection is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self.connection = await aiosqlite.connect(
                self.db_path, detect_types=sqlite3.PARSE_DECLTYPES
            )
            self.connection.row_factory = aiosqlite.Row
            await self.connection.execute("PRAGMA journal_mode=WAL")
            await self.connection.execute("PRAGMA synchronous=FULL")
        return self.connection

    async def disconnect(self):
        if self.connection:
            await self.connection.close()
            self.connection = None

    async def schema_version(self) -> int:
        conn = await self.connect()
        cursor = await conn.execute("PRAGMA user_version")
        row = await cursor.fetchone()
        return row[0]

    async def initialize_schema(self, schema_path: str | Path = SCHEMA_PATH):
        """
        Bring the database up to ``SCHEMA_VERSION``.

        Every statement in the schema file is idempotent, so an older database is
        upgraded by running it again. A database written by a newer release is refused
        rather than silently misread.
        """
        found = await self.schema_version()
        if found > SCHEMA_VERSION:
            raise ConfigurationError(
                f"{self.db_path} has schema version {found}, this release understands "
                f"up to {SCHEMA_VERSION}"
            )
        if found == SCHEMA_VERSION:
            return

        conn = await self.connect()
        await conn.executescript(Path(schema_path).read_text())
        await conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await conn.commit()
        logger.info(
            f"Database schema upgraded from version {found} to {SCHEMA_VERSION}",
            extra={
                "event_type": "schema_upgrade",
                "event_data": {"path": self.db_path, "from": found, "to": SCHEMA_VERSION},
            },
        )

    async def __aenter__(self):
        return await self.connect()

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
