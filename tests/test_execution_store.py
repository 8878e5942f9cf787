import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ConflictError, NotFoundError
from app.execution_store import ExecutionStore


async def _started(plan_store, execution_store, names=("A", "B", "C")):
    plan = await plan_store.create_plan("Plan", list(names))
    execution = await execution_store.start_execution(plan.id)
    return plan, execution


@pytest.mark.asyncio
async def test_start_execution_snapshots_items(plan_store, execution_store):
    plan, execution = await _started(plan_store, execution_store)
    assert execution.action_plan_id == plan.id
    assert execution.finished is None
    assert [item.order_index for item in execution.items] == [i.order_index for i in plan.items]
    assert [item.action_item_id for item in execution.items] == [i.id for i in plan.items]
    assert [item.action_name for item in execution.items] == ["A", "B", "C"]
    assert all(item.finished is None for item in execution.items)


@pytest.mark.asyncio
async def test_plan_edits_do_not_touch_started_executions(plan_store, execution_store):
    plan, execution = await _started(plan_store, execution_store)
    await plan_store.add_item(plan.id, action_name="D", position=0)
    await plan_store.remove_item(plan.items[1].id)
    await plan_store.reorder_items(plan.id, [i.id for i in reversed((await plan_store.get_plan(plan.id)).items)])

    reloaded = await execution_store.get_execution(execution.id)
    assert [item.action_name for item in reloaded.items] == ["A", "B", "C"]
    assert [item.order_index for item in reloaded.items] == [0, 1, 2]
    # The removed template item is unlinked, not lost.
    assert reloaded.items[1].action_item_id is None


@pytest.mark.asyncio
async def test_start_execution_rejects_empty_missing_and_deleted_plans(plan_store, execution_store):
    empty = await plan_store.create_plan("Empty")
    with pytest.raises(ConflictError):
        await execution_store.start_execution(empty.id)
    with pytest.raises(NotFoundError):
        await execution_store.start_execution("missing")

    plan, execution = await _started(plan_store, execution_store)
    await execution_store.set_item_finished(execution.items[0].id, True)
    before = await execution_store.get_execution(execution.id)
    await plan_store.delete_plan(plan.id)
    with pytest.raises(NotFoundError):
        await execution_store.start_execution(plan.id)
    after = await execution_store.get_execution(execution.id)
    assert after == before


@pytest.mark.asyncio
async def test_set_item_finished_is_idempotent(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store)
    item_id = execution.items[0].id
    first = await execution_store.set_item_finished(item_id, True)
    await asyncio.sleep(0.01)
    second = await execution_store.set_item_finished(item_id, True)
    assert first.finished is True
    assert first.finished_display
    assert second.finished_at == first.finished_at


@pytest.mark.asyncio
async def test_toggle_round_trip(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store)
    item_id = execution.items[0].id
    await execution_store.set_item_finished(item_id, True)
    cleared = await execution_store.set_item_finished(item_id, False)
    assert cleared.finished is False
    assert cleared.finished_at is None
    assert cleared.finished_display == ""
    reloaded = await execution_store.get_execution(execution.id)
    assert reloaded.items[0].finished is None


@pytest.mark.asyncio
async def test_set_item_finished_unknown_id(execution_store):
    with pytest.raises(NotFoundError):
        await execution_store.set_item_finished("missing", True)


@pytest.mark.asyncio
async def test_completion_status(plan_store, execution_store, db):
    _, execution = await _started(plan_store, execution_store, names=("A", "B"))
    status = await execution_store.completion_status(execution.id)
    assert (status.all_finished, status.finished_count, status.total_count) == (False, 0, 2)

    for item in execution.items:
        await execution_store.set_item_finished(item.id, True)
    status = await execution_store.completion_status(execution.id)
    assert status.all_finished is True
    assert (await execution_store.get_execution(execution.id)).can_complete is True

    # A pending row added behind the snapshot's back flips the status.
    await db.execute(
        "INSERT INTO action_item_executions"
        "(id, order_index, action_item_id, action_id, action_plan_execution_id, finished) "
        "VALUES (?,?,?,?,?,NULL)",
        ("extra", 2, None, execution.items[0].action_id, execution.id),
    )
    status = await execution_store.completion_status(execution.id)
    assert status.all_finished is False

    with pytest.raises(NotFoundError):
        await execution_store.completion_status("missing")


@pytest.mark.asyncio
async def test_finish_execution(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store, names=("A", "B"))
    await execution_store.set_item_finished(execution.items[0].id, True)
    with pytest.raises(ConflictError):
        await execution_store.finish_execution(execution.id)
    assert (await execution_store.get_execution(execution.id)).finished is None

    await execution_store.set_item_finished(execution.items[1].id, True)
    finished = await execution_store.finish_execution(execution.id)
    assert finished.finished
    assert finished.finished_display
    assert finished.can_complete is False
    assert finished.can_reopen is True

    await asyncio.sleep(0.01)
    again = await execution_store.finish_execution(execution.id)
    assert again.finished == finished.finished


@pytest.mark.asyncio
async def test_completed_execution_locks_items(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store, names=("A",))
    await execution_store.set_item_finished(execution.items[0].id, True)
    await execution_store.finish_execution(execution.id)
    with pytest.raises(ConflictError):
        await execution_store.set_item_finished(execution.items[0].id, False)


@pytest.mark.asyncio
async def test_reopen_within_window(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store, names=("A",))
    with pytest.raises(ConflictError):
        await execution_store.reopen_execution(execution.id)

    await execution_store.set_item_finished(execution.items[0].id, True)
    await execution_store.finish_execution(execution.id)
    reopened = await execution_store.reopen_execution(execution.id)
    assert reopened.finished is None
    assert reopened.items[0].finished is not None
    cleared = await execution_store.set_item_finished(execution.items[0].id, False)
    assert cleared.finished is False


@pytest.mark.asyncio
async def test_reopen_outside_window(plan_store, db):
    store = ExecutionStore(db, reopen_window_hours=1)
    _, execution = await _started(plan_store, store, names=("A",))
    await store.set_item_finished(execution.items[0].id, True)
    await store.finish_execution(execution.id)
    long_ago = (datetime.now(timezone.utc) - timedelta(hours=2)).isoformat().replace("+00:00", "Z")
    await db.execute("UPDATE action_plan_executions SET finished=? WHERE id=?", (long_ago, execution.id))
    assert (await store.get_execution(execution.id)).can_reopen is False
    with pytest.raises(ConflictError):
        await store.reopen_execution(execution.id)


@pytest.mark.asyncio
async def test_delete_only_open_executions(plan_store, execution_store, db):
    _, open_run = await _started(plan_store, execution_store, names=("A",))
    await execution_store.delete_execution(open_run.id)
    with pytest.raises(NotFoundError):
        await execution_store.get_execution(open_run.id)
    row = await db.fetchone(
        "SELECT COUNT(*) AS cnt FROM action_item_executions WHERE action_plan_execution_id=?", (open_run.id,)
    )
    assert row["cnt"] == 0

    _, done = await _started(plan_store, execution_store, names=("B",))
    await execution_store.set_item_finished(done.items[0].id, True)
    await execution_store.finish_execution(done.id)
    with pytest.raises(ConflictError):
        await execution_store.delete_execution(done.id)


@pytest.mark.asyncio
async def test_list_executions_splits_open_and_finished(plan_store, execution_store):
    _, first = await _started(plan_store, execution_store, names=("A",))
    _, second = await _started(plan_store, execution_store, names=("B",))
    await execution_store.set_item_finished(first.items[0].id, True)
    await execution_store.finish_execution(first.id)

    listing = await execution_store.list_executions()
    assert [e.id for e in listing.unfinished] == [second.id]
    assert [e.id for e in listing.finished] == [first.id]
    assert listing.finished[0].action_plan_name == "Plan"


@pytest.mark.asyncio
async def test_concurrent_toggles_on_different_items(plan_store, execution_store):
    _, execution = await _started(plan_store, execution_store, names=("A", "B", "C", "D"))
    results = await asyncio.gather(
        *(execution_store.set_item_finished(item.id, True) for item in execution.items)
    )
    assert all(state.finished for state in results)
    assert (await execution_store.completion_status(execution.id)).all_finished is True
