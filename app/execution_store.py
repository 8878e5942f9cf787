import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

import aiosqlite

from .db import DEFAULT_DISPLAY_FORMAT, Database, format_timestamp, new_id, parse_timestamp, utc_now
from .errors import ConflictError, NotFoundError
from .schemas import (
    ActionItemExecution,
    ActionPlanExecution,
    CompletionStatus,
    ExecutionList,
    ItemFinishedState,
)

logger = logging.getLogger("uvicorn.error")

EXECUTION_COLUMNS = (
    "action_plan_executions.id, action_plan_executions.action_plan_id, "
    "action_plans.name AS action_plan_name, action_plan_executions.started, action_plan_executions.finished"
)


class ExecutionStore:
    """Runs of an action plan: item snapshots, check-off timestamps and completion."""

    def __init__(
        self,
        db: Database,
        display_format: str = DEFAULT_DISPLAY_FORMAT,
        reopen_window_hours: int = 24,
    ):
        self.db = db
        self.display_format = display_format
        self.reopen_window = timedelta(hours=reopen_window_hours)

    def _display(self, value: Optional[str]) -> str:
        return format_timestamp(value, self.display_format)

    def _can_reopen(self, finished: Optional[str]) -> bool:
        if not finished:
            return False
        return datetime.now(timezone.utc) - parse_timestamp(finished) <= self.reopen_window

    def _item_from_row(self, row: aiosqlite.Row) -> ActionItemExecution:
        return ActionItemExecution(
            id=row["id"],
            order_index=int(row["order_index"]),
            action_item_id=row["action_item_id"],
            action_id=row["action_id"],
            action_name=row["action_name"],
            action_plan_execution_id=row["action_plan_execution_id"],
            finished=row["finished"],
            finished_display=self._display(row["finished"]),
        )

    def _execution_from_row(
        self, row: aiosqlite.Row, items: Optional[List[ActionItemExecution]] = None
    ) -> ActionPlanExecution:
        items = items or []
        finished = row["finished"]
        return ActionPlanExecution(
            id=row["id"],
            action_plan_id=row["action_plan_id"],
            action_plan_name=row["action_plan_name"],
            started=row["started"],
            started_display=self._display(row["started"]),
            finished=finished,
            finished_display=self._display(finished),
            items=items,
            can_complete=finished is None and bool(items) and all(item.is_finished for item in items),
            can_reopen=self._can_reopen(finished),
        )

    async def _fetch_execution(self, db: aiosqlite.Connection, execution_id: str) -> aiosqlite.Row:
        cursor = await db.execute(
            f"SELECT {EXECUTION_COLUMNS} FROM action_plan_executions "
            "INNER JOIN action_plans ON action_plans.id = action_plan_executions.action_plan_id "
            "WHERE action_plan_executions.id=?",
            (execution_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        if not row:
            raise NotFoundError.for_entity("Execution", execution_id)
        return row

    async def _fetch_items(self, db: aiosqlite.Connection, execution_id: str) -> List[ActionItemExecution]:
        cursor = await db.execute(
            "SELECT action_item_executions.id, action_item_executions.order_index, "
            "action_item_executions.action_item_id, action_item_executions.action_id, "
            "actions.name AS action_name, action_item_executions.action_plan_execution_id, "
            "action_item_executions.finished "
            "FROM action_item_executions "
            "INNER JOIN actions ON actions.id = action_item_executions.action_id "
            "WHERE action_item_executions.action_plan_execution_id=? "
            "ORDER BY action_item_executions.order_index ASC",
            (execution_id,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [self._item_from_row(row) for row in rows]

    async def _pending_count(self, db: aiosqlite.Connection, execution_id: str) -> int:
        cursor = await db.execute(
            "SELECT COUNT(*) AS cnt FROM action_item_executions WHERE action_plan_execution_id=? AND finished IS NULL",
            (execution_id,),
        )
        row = await cursor.fetchone()
        await cursor.close()
        return int(row["cnt"])

    async def start_execution(self, plan_id: str) -> ActionPlanExecution:
        execution_id = new_id()
        async with self.db.transaction() as db:
            cursor = await db.execute("SELECT deleted_at FROM action_plans WHERE id=?", (plan_id,))
            plan = await cursor.fetchone()
            await cursor.close()
            if not plan or plan["deleted_at"]:
                raise NotFoundError.for_entity("Action plan", plan_id)
            cursor = await db.execute(
                "SELECT id, order_index, action_id FROM action_items WHERE action_plan_id=? ORDER BY order_index ASC",
                (plan_id,),
            )
            template_items = await cursor.fetchall()
            await cursor.close()
            if not template_items:
                raise ConflictError("An action plan needs at least one item before it can be started.")
            await db.execute(
                "INSERT INTO action_plan_executions(id, action_plan_id, started, finished) VALUES (?,?,?,NULL)",
                (execution_id, plan_id, utc_now()),
            )
            await db.executemany(
                "INSERT INTO action_item_executions"
                "(id, order_index, action_item_id, action_id, action_plan_execution_id, finished) "
                "VALUES (?,?,?,?,?,NULL)",
                [
                    (new_id(), item["order_index"], item["id"], item["action_id"], execution_id)
                    for item in template_items
                ],
            )
        logger.info("Started execution %s of plan %s with %d item(s)", execution_id, plan_id, len(template_items))
        return await self.get_execution(execution_id)

    async def get_execution(self, execution_id: str) -> ActionPlanExecution:
        async with self.db.connect() as db:
            row = await self._fetch_execution(db, execution_id)
            items = await self._fetch_items(db, execution_id)
        return self._execution_from_row(row, items)

    async def list_executions(self) -> ExecutionList:
        base = (
            f"SELECT {EXECUTION_COLUMNS} FROM action_plan_executions "
            "INNER JOIN action_plans ON action_plans.id = action_plan_executions.action_plan_id "
        )
        unfinished = await self.db.fetchall(
            base + "WHERE action_plan_executions.finished IS NULL ORDER BY action_plan_executions.started DESC"
        )
        finished = await self.db.fetchall(
            base + "WHERE action_plan_executions.finished IS NOT NULL ORDER BY action_plan_executions.finished DESC"
        )
        return ExecutionList(
            unfinished=[self._execution_from_row(row) for row in unfinished],
            finished=[self._execution_from_row(row) for row in finished],
        )

    async def set_item_finished(self, item_execution_id: str, finished: bool) -> ItemFinishedState:
        async with self.db.transaction() as db:
            cursor = await db.execute(
                "SELECT action_item_executions.finished, action_plan_executions.finished AS execution_finished "
                "FROM action_item_executions "
                "INNER JOIN action_plan_executions "
                "ON action_plan_executions.id = action_item_executions.action_plan_execution_id "
                "WHERE action_item_executions.id=?",
                (item_execution_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            if not row:
                raise NotFoundError.for_entity("Execution item", item_execution_id)
            if row["execution_finished"]:
                logger.warning("Rejected toggle of item %s on a completed execution", item_execution_id)
                raise ConflictError("Execution is already completed; reopen it to change items.")
            finished_at: Optional[str] = row["finished"]
            if finished and finished_at is None:
                finished_at = utc_now()
                await db.execute(
                    "UPDATE action_item_executions SET finished=? WHERE id=? AND finished IS NULL",
                    (finished_at, item_execution_id),
                )
            elif not finished:
                finished_at = None
                await db.execute("UPDATE action_item_executions SET finished=NULL WHERE id=?", (item_execution_id,))
        return ItemFinishedState(
            finished=finished_at is not None,
            finished_at=finished_at,
            finished_display=self._display(finished_at),
        )

    async def completion_status(self, execution_id: str) -> CompletionStatus:
        async with self.db.connect() as db:
            await self._fetch_execution(db, execution_id)
            cursor = await db.execute(
                "SELECT COUNT(*) AS total, COUNT(finished) AS done FROM action_item_executions "
                "WHERE action_plan_execution_id=?",
                (execution_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        total = int(row["total"])
        done = int(row["done"])
        return CompletionStatus(all_finished=done == total, finished_count=done, total_count=total)

    async def finish_execution(self, execution_id: str) -> ActionPlanExecution:
        async with self.db.transaction() as db:
            row = await self._fetch_execution(db, execution_id)
            pending = await self._pending_count(db, execution_id)
            if pending:
                logger.warning("Rejected finish of execution %s: %d item(s) pending", execution_id, pending)
                raise ConflictError("All items must be checked before completing this execution.")
            if row["finished"] is None:
                await db.execute(
                    "UPDATE action_plan_executions SET finished=? WHERE id=? AND finished IS NULL",
                    (utc_now(), execution_id),
                )
                logger.info("Finished execution %s", execution_id)
        return await self.get_execution(execution_id)

    async def reopen_execution(self, execution_id: str) -> ActionPlanExecution:
        async with self.db.transaction() as db:
            row = await self._fetch_execution(db, execution_id)
            if row["finished"] is None:
                raise ConflictError("Execution is already open.")
            if not self._can_reopen(row["finished"]):
                hours = int(self.reopen_window.total_seconds() // 3600)
                raise ConflictError(f"Execution can only be reopened within {hours} hours of completion.")
            await db.execute("UPDATE action_plan_executions SET finished=NULL WHERE id=?", (execution_id,))
        logger.info("Reopened execution %s", execution_id)
        return await self.get_execution(execution_id)

    async def delete_execution(self, execution_id: str) -> None:
        async with self.db.transaction() as db:
            row = await self._fetch_execution(db, execution_id)
            if row["finished"] is not None:
                raise ConflictError("Only open executions can be deleted.")
            await db.execute("DELETE FROM action_item_executions WHERE action_plan_execution_id=?", (execution_id,))
            await db.execute("DELETE FROM action_plan_executions WHERE id=?", (execution_id,))
        logger.info("Deleted open execution %s", execution_id)
