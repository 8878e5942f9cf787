import logging
from typing import List, Optional, Sequence, Union

import aiosqlite

from .db import Database, new_id, utc_now
from .errors import ConflictError, NotFoundError, ValidationError
from .schemas import Action, ActionItem, ActionPlan, ItemRef

logger = logging.getLogger("uvicorn.error")

ITEM_COLUMNS = (
    "action_items.id, action_items.order_index, action_items.action_plan_id, "
    "action_items.action_id, actions.name AS action_name"
)


def _clean_name(value: Optional[str], what: str) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{what} name is required.")
    return cleaned


def _item_from_row(row: aiosqlite.Row) -> ActionItem:
    return ActionItem(
        id=row["id"],
        order_index=int(row["order_index"]),
        action_plan_id=row["action_plan_id"],
        action_id=row["action_id"],
        action_name=row["action_name"],
    )


async def ensure_action(db: aiosqlite.Connection, name: str) -> str:
    """Reuse the action with exactly this name, or insert it. Returns the action id."""
    cursor = await db.execute("SELECT id FROM actions WHERE name=? ORDER BY rowid ASC LIMIT 1", (name,))
    row = await cursor.fetchone()
    await cursor.close()
    if row:
        return row["id"]
    action_id = new_id()
    await db.execute("INSERT INTO actions(id, name) VALUES (?,?)", (action_id, name))
    return action_id


class PlanStore:
    """Action plans, their ordered items and the reusable actions they point at."""

    def __init__(self, db: Database):
        self.db = db

    async def _fetch_plan(
        self, db: aiosqlite.Connection, plan_id: str, include_deleted: bool = False
    ) -> aiosqlite.Row:
        cursor = await db.execute(
            "SELECT id, name, created_at, deleted_at FROM action_plans WHERE id=?",
            (plan_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if not row or (row["deleted_at"] and not include_deleted):
            raise NotFoundError.for_entity("Action plan", plan_id)
        return row

    async def _fetch_items(self, db: aiosqlite.Connection, plan_id: str) -> List[ActionItem]:
        cursor = await db.execute(
            f"SELECT {ITEM_COLUMNS} FROM action_items "
            "INNER JOIN actions ON actions.id = action_items.action_id "
            "WHERE action_items.action_plan_id=? ORDER BY action_items.order_index ASC",
            (plan_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_item_from_row(row) for row in rows]

    async def _fetch_item(self, db: aiosqlite.Connection, item_id: str) -> ActionItem:
        cursor = await db.execute(
            f"SELECT {ITEM_COLUMNS} FROM action_items "
            "INNER JOIN actions ON actions.id = action_items.action_id WHERE action_items.id=?",
            (item_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if not row:
            raise NotFoundError.for_entity("Action item", item_id)
        return _item_from_row(row)

    async def _resolve_action(
        self, db: aiosqlite.Connection, action_id: Optional[str], action_name: Optional[str]
    ) -> str:
        if action_id and action_name:
            raise ValidationError("Provide either an action id or an action name, not both.")
        if action_id:
            cursor = await db.execute("SELECT id FROM actions WHERE id=?", (action_id,))
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                raise NotFoundError.for_entity("Action", action_id)
            return row["id"]
        return await ensure_action(db, _clean_name(action_name, "Action"))

    async def _insert_item(
        self, db: aiosqlite.Connection, plan_id: str, action_id: str, position: Optional[int]
    ) -> str:
        if position is not None and position < 0:
            raise ValidationError("Item position must be zero or greater.")
        cursor = await db.execute("SELECT COUNT(*) AS cnt FROM action_items WHERE action_plan_id=?", (plan_id,))
        row = await cursor.fetchone()
        await cursor.close()
        count = int(row["cnt"])
        index = count if position is None or position > count else position
        await db.execute(
            "UPDATE action_items SET order_index = order_index + 1 WHERE action_plan_id=? AND order_index >= ?",
            (plan_id, index),
        )
        item_id = new_id()
        await db.execute(
            "INSERT INTO action_items(id, order_index, action_plan_id, action_id) VALUES (?,?,?,?)",
            (item_id, index, plan_id, action_id),
        )
        return item_id

    async def create_plan(self, name: str, items: Sequence[Union[ItemRef, str]] = ()) -> ActionPlan:
        cleaned = _clean_name(name, "Action plan")
        plan_id = new_id()
        async with self.db.transaction() as db:
            await db.execute(
                "INSERT INTO action_plans(id, name, created_at, deleted_at) VALUES (?,?,?,NULL)",
                (plan_id, cleaned, utc_now()),
            )
            for item in items:
                if isinstance(item, str):
                    action_id = await self._resolve_action(db, None, item)
                else:
                    action_id = await self._resolve_action(db, item.action_id, item.action_name)
                await self._insert_item(db, plan_id, action_id, None)
            row = await self._fetch_plan(db, plan_id)
            plan_items = await self._fetch_items(db, plan_id)
        logger.info("Created action plan %s (%s) with %d item(s)", plan_id, cleaned, len(plan_items))
        return ActionPlan(**dict(row), items=plan_items)

    async def get_plan(self, plan_id: str, include_deleted: bool = False) -> ActionPlan:
        async with self.db.connect() as db:
            row = await self._fetch_plan(db, plan_id, include_deleted=include_deleted)
            items = await self._fetch_items(db, plan_id)
        return ActionPlan(**dict(row), items=items)

    async def list_plans(self, include_deleted: bool = False) -> List[ActionPlan]:
        where = "" if include_deleted else "WHERE deleted_at IS NULL"
        rows = await self.db.fetchall(
            f"SELECT id, name, created_at, deleted_at FROM action_plans {where} ORDER BY name COLLATE NOCASE ASC, id ASC"
        )
        return [ActionPlan(**dict(row)) for row in rows]

    async def rename_plan(self, plan_id: str, name: str) -> ActionPlan:
        cleaned = _clean_name(name, "Action plan")
        async with self.db.transaction() as db:
            await self._fetch_plan(db, plan_id)
            await db.execute("UPDATE action_plans SET name=? WHERE id=?", (cleaned, plan_id))
        return await self.get_plan(plan_id)

    async def delete_plan(self, plan_id: str) -> ActionPlan:
        async with self.db.transaction() as db:
            row = await self._fetch_plan(db, plan_id, include_deleted=True)
            if not row["deleted_at"]:
                await db.execute("UPDATE action_plans SET deleted_at=? WHERE id=?", (utc_now(), plan_id))
                logger.info("Soft-deleted action plan %s", plan_id)
        return await self.get_plan(plan_id, include_deleted=True)

    async def add_item(
        self,
        plan_id: str,
        action_id: Optional[str] = None,
        action_name: Optional[str] = None,
        position: Optional[int] = None,
    ) -> ActionItem:
        if not action_id and not (action_name or "").strip():
            raise ValidationError("Provide an action id or an action name.")
        async with self.db.transaction() as db:
            await self._fetch_plan(db, plan_id)
            resolved = await self._resolve_action(db, action_id, action_name)
            item_id = await self._insert_item(db, plan_id, resolved, position)
            return await self._fetch_item(db, item_id)

    async def reorder_items(self, plan_id: str, ordered_item_ids: Sequence[str]) -> List[ActionItem]:
        async with self.db.transaction() as db:
            await self._fetch_plan(db, plan_id)
            current = await self._fetch_items(db, plan_id)
            current_ids = {item.id for item in current}
            requested = list(ordered_item_ids)
            if len(requested) != len(set(requested)) or set(requested) != current_ids:
                raise ValidationError("Item order must list every item of the plan exactly once.")
            for index, item_id in enumerate(requested):
                await db.execute(
                    "UPDATE action_items SET order_index=? WHERE id=? AND action_plan_id=?",
                    (index, item_id, plan_id),
                )
            return await self._fetch_items(db, plan_id)

    async def remove_item(self, item_id: str) -> None:
        async with self.db.transaction() as db:
            item = await self._fetch_item(db, item_id)
            await self._fetch_plan(db, item.action_plan_id)
            await db.execute("DELETE FROM action_items WHERE id=?", (item_id,))
            await db.execute(
                "UPDATE action_items SET order_index = order_index - 1 WHERE action_plan_id=? AND order_index > ?",
                (item.action_plan_id, item.order_index),
            )

    async def list_actions(self) -> List[Action]:
        rows = await self.db.fetchall("SELECT id, name FROM actions ORDER BY name COLLATE NOCASE ASC, id ASC")
        return [Action(id=row["id"], name=row["name"]) for row in rows]

    async def get_action(self, action_id: str) -> Action:
        row = await self.db.fetchone("SELECT id, name FROM actions WHERE id=?", (action_id,))
        if not row:
            raise NotFoundError.for_entity("Action", action_id)
        return Action(id=row["id"], name=row["name"])

    async def rename_action(self, action_id: str, name: str) -> Action:
        cleaned = _clean_name(name, "Action")
        async with self.db.transaction() as db:
            cursor = await db.execute("UPDATE actions SET name=? WHERE id=?", (cleaned, action_id))
            if cursor.rowcount == 0:
                raise NotFoundError.for_entity("Action", action_id)
        return Action(id=action_id, name=cleaned)

    async def delete_action(self, action_id: str) -> None:
        async with self.db.transaction() as db:
            cursor = await db.execute(
                "SELECT "
                "(SELECT COUNT(*) FROM action_items WHERE action_id=?) + "
                "(SELECT COUNT(*) FROM action_item_executions WHERE action_id=?) AS refs",
                (action_id, action_id),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if int(row["refs"]):
                raise ConflictError("Action is still used by a plan or an execution.")
            cursor = await db.execute("DELETE FROM actions WHERE id=?", (action_id,))
            if cursor.rowcount == 0:
                raise NotFoundError.for_entity("Action", action_id)
