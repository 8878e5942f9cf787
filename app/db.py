import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, List, Optional, Tuple

import aiosqlite

from .errors import StorageError

logger = logging.getLogger("uvicorn.error")

DEFAULT_DISPLAY_FORMAT = "%Y-%m-%d %H:%M UTC"

SCHEMA = """
CREATE TABLE IF NOT EXISTS actions(
    id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS actions_name_idx ON actions(name);

CREATE TABLE IF NOT EXISTS action_plans(
    id TEXT PRIMARY KEY NOT NULL,
    name TEXT NOT NULL,
    created_at TEXT NOT NULL,
    deleted_at TEXT
);
CREATE INDEX IF NOT EXISTS action_plans_deleted_at_idx ON action_plans(deleted_at);

CREATE TABLE IF NOT EXISTS action_items(
    id TEXT PRIMARY KEY NOT NULL,
    order_index INTEGER NOT NULL,
    action_plan_id TEXT NOT NULL REFERENCES action_plans(id),
    action_id TEXT NOT NULL REFERENCES actions(id)
);
CREATE INDEX IF NOT EXISTS action_items_plan_idx ON action_items(action_plan_id, order_index);
CREATE INDEX IF NOT EXISTS action_items_action_idx ON action_items(action_id);

CREATE TABLE IF NOT EXISTS action_plan_executions(
    id TEXT PRIMARY KEY NOT NULL,
    action_plan_id TEXT NOT NULL REFERENCES action_plans(id),
    started TEXT NOT NULL,
    finished TEXT
);
CREATE INDEX IF NOT EXISTS action_plan_executions_plan_idx ON action_plan_executions(action_plan_id);

CREATE TABLE IF NOT EXISTS action_item_executions(
    id TEXT PRIMARY KEY NOT NULL,
    order_index INTEGER NOT NULL,
    action_item_id TEXT REFERENCES action_items(id) ON DELETE SET NULL,
    action_id TEXT NOT NULL REFERENCES actions(id),
    action_plan_execution_id TEXT NOT NULL REFERENCES action_plan_executions(id) ON DELETE CASCADE,
    finished TEXT
);
CREATE INDEX IF NOT EXISTS action_item_executions_execution_idx
    ON action_item_executions(action_plan_execution_id, order_index);
CREATE INDEX IF NOT EXISTS action_item_executions_item_idx ON action_item_executions(action_item_id);
CREATE INDEX IF NOT EXISTS action_item_executions_action_idx ON action_item_executions(action_id);
"""


def to_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def utc_now() -> str:
    return to_timestamp(datetime.now(timezone.utc))


def new_id() -> str:
    return uuid.uuid4().hex


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def format_timestamp(value: Optional[str], fmt: str = DEFAULT_DISPLAY_FORMAT) -> str:
    """Human-readable rendering of a stored timestamp; empty for NULL."""
    if not value:
        return ""
    return parse_timestamp(value).astimezone(timezone.utc).strftime(fmt)


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.executescript(SCHEMA)
            await db.commit()

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        """Read-only connection with dict-like rows and foreign keys enforced."""
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys=ON")
                yield db
        except aiosqlite.Error as exc:
            logger.exception("Database read failed: %s", exc)
            raise StorageError("Storage failure while reading.") from exc

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Single all-or-nothing write.

        Any exception raised inside the block, task cancellation included, rolls
        the transaction back. sqlite errors surface as StorageError.
        """
        try:
            async with aiosqlite.connect(self.path) as db:
                db.row_factory = aiosqlite.Row
                await db.execute("PRAGMA foreign_keys=ON")
                await db.execute("BEGIN IMMEDIATE")
                try:
                    yield db
                except BaseException:
                    await db.rollback()
                    raise
                await db.commit()
        except aiosqlite.Error as exc:
            logger.exception("Database transaction failed: %s", exc)
            raise StorageError("Storage failure; the change was not saved.") from exc

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with self.transaction() as db:
            await db.execute(query, params)

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with self.connect() as db:
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None
