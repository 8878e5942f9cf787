"""JSON export/import of every plan and execution.

Import replaces the whole database in one transaction. Actions are not exported
by id; they are re-created from the item names on import.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from pydantic import ValidationError as SchemaValidationError

from .db import Database, new_id, to_timestamp, utc_now
from .errors import ValidationError
from .plan_store import ensure_action
from .schemas import (
    BackupActionPlan,
    BackupExecution,
    BackupExecutionItem,
    BackupFile,
    BackupPlanItem,
)

logger = logging.getLogger("uvicorn.error")

BACKUP_VERSION = 1


class BackupService:
    def __init__(self, db: Database):
        self.db = db

    async def export_backup(self) -> BackupFile:
        async with self.db.connect() as db:
            cursor = await db.execute("SELECT id, name, deleted_at FROM action_plans ORDER BY name ASC, id ASC")
            plan_rows = await cursor.fetchall()
            await cursor.close()
            plans = []
            for plan in plan_rows:
                cursor = await db.execute(
                    "SELECT action_items.order_index, actions.name AS action_name FROM action_items "
                    "INNER JOIN actions ON actions.id = action_items.action_id "
                    "WHERE action_items.action_plan_id=? ORDER BY action_items.order_index ASC",
                    (plan["id"],),
                )
                items = await cursor.fetchall()
                await cursor.close()
                plans.append(
                    BackupActionPlan(
                        id=plan["id"],
                        name=plan["name"],
                        deleted_at=plan["deleted_at"],
                        items=[BackupPlanItem(**dict(item)) for item in items],
                    )
                )

            cursor = await db.execute(
                "SELECT id, action_plan_id, started, finished FROM action_plan_executions ORDER BY started DESC"
            )
            execution_rows = await cursor.fetchall()
            await cursor.close()
            executions = []
            for execution in execution_rows:
                cursor = await db.execute(
                    "SELECT action_item_executions.order_index, actions.name AS action_name, "
                    "action_item_executions.finished FROM action_item_executions "
                    "INNER JOIN actions ON actions.id = action_item_executions.action_id "
                    "WHERE action_item_executions.action_plan_execution_id=? "
                    "ORDER BY action_item_executions.order_index ASC",
                    (execution["id"],),
                )
                items = await cursor.fetchall()
                await cursor.close()
                executions.append(
                    BackupExecution(
                        id=execution["id"],
                        action_plan=execution["action_plan_id"],
                        started=execution["started"],
                        finished=execution["finished"],
                        items=[BackupExecutionItem(**dict(item)) for item in items],
                    )
                )

        return BackupFile(
            version=BACKUP_VERSION,
            exported_at=utc_now(),
            action_plans=plans,
            action_plan_executions=executions,
        )

    def parse(self, payload: Any) -> BackupFile:
        if isinstance(payload, BackupFile):
            backup = payload
        else:
            try:
                if isinstance(payload, (str, bytes)):
                    backup = BackupFile.model_validate_json(payload)
                else:
                    backup = BackupFile.model_validate(payload)
            except SchemaValidationError as exc:
                raise ValidationError("The uploaded file is not valid backup JSON.") from exc
        if backup.version != BACKUP_VERSION:
            raise ValidationError(f"Unsupported backup version: {backup.version}")
        plan_ids = set()
        for plan in backup.action_plans:
            if plan.id in plan_ids:
                raise ValidationError(f"Duplicate action plan id in backup: {plan.id}")
            plan_ids.add(plan.id)
        execution_ids = set()
        for execution in backup.action_plan_executions:
            if execution.action_plan not in plan_ids:
                raise ValidationError(
                    f"Execution {execution.id} references unknown action plan {execution.action_plan}"
                )
            if execution.id in execution_ids:
                raise ValidationError(f"Duplicate execution id in backup: {execution.id}")
            execution_ids.add(execution.id)
        return backup

    async def import_backup(self, payload: Any) -> Dict[str, int]:
        backup = self.parse(payload)
        now = utc_now()
        async with self.db.transaction() as db:
            for table in (
                "action_item_executions",
                "action_plan_executions",
                "action_items",
                "action_plans",
                "actions",
            ):
                await db.execute(f"DELETE FROM {table}")

            action_ids: Dict[str, str] = {}
            # (plan id, order index) -> (item id, action id), for re-linking execution items.
            plan_items: Dict[Tuple[str, int], Tuple[str, str]] = {}

            async def action_for(name: str) -> str:
                if name not in action_ids:
                    action_ids[name] = await ensure_action(db, name)
                return action_ids[name]

            for plan in backup.action_plans:
                await db.execute(
                    "INSERT INTO action_plans(id, name, created_at, deleted_at) VALUES (?,?,?,?)",
                    (plan.id, plan.name, now, _stored(plan.deleted_at)),
                )
                for index, item in enumerate(sorted(plan.items, key=lambda i: i.order_index)):
                    action_id = await action_for(item.action_name)
                    item_id = new_id()
                    await db.execute(
                        "INSERT INTO action_items(id, order_index, action_plan_id, action_id) VALUES (?,?,?,?)",
                        (item_id, index, plan.id, action_id),
                    )
                    plan_items[(plan.id, item.order_index)] = (item_id, action_id)

            for execution in backup.action_plan_executions:
                await db.execute(
                    "INSERT INTO action_plan_executions(id, action_plan_id, started, finished) VALUES (?,?,?,?)",
                    (
                        execution.id,
                        execution.action_plan,
                        to_timestamp(execution.started),
                        _stored(execution.finished),
                    ),
                )
                for item in execution.items:
                    action_id = await action_for(item.action_name)
                    await db.execute(
                        "INSERT INTO action_item_executions"
                        "(id, order_index, action_item_id, action_id, action_plan_execution_id, finished) "
                        "VALUES (?,?,?,?,?,?)",
                        (
                            new_id(),
                            item.order_index,
                            _linked_item(plan_items, execution.action_plan, item.order_index, action_id),
                            action_id,
                            execution.id,
                            _stored(item.finished),
                        ),
                    )
        logger.info(
            "Imported backup: %d plan(s), %d execution(s)",
            len(backup.action_plans),
            len(backup.action_plan_executions),
        )
        return {"plans": len(backup.action_plans), "executions": len(backup.action_plan_executions)}


def _stored(value: Optional[datetime]) -> Optional[str]:
    return to_timestamp(value) if value is not None else None


def _linked_item(
    plan_items: Dict[Tuple[str, int], Tuple[str, str]], plan_id: str, order_index: int, action_id: str
) -> Optional[str]:
    match = plan_items.get((plan_id, order_index))
    if match and match[1] == action_id:
        return match[0]
    return None
