import pytest

from app.errors import ConflictError, NotFoundError, ValidationError
from app.schemas import ItemRef


@pytest.mark.asyncio
async def test_create_plan_requires_name(plan_store):
    with pytest.raises(ValidationError):
        await plan_store.create_plan("   ")
    assert await plan_store.list_plans() == []


@pytest.mark.asyncio
async def test_create_plan_with_items_in_order(plan_store):
    plan = await plan_store.create_plan("Laptop setup", ["Install OS", "Join domain", "Encrypt disk"])
    assert plan.name == "Laptop setup"
    assert [item.action_name for item in plan.items] == ["Install OS", "Join domain", "Encrypt disk"]
    assert [item.order_index for item in plan.items] == [0, 1, 2]


@pytest.mark.asyncio
async def test_bad_initial_item_leaves_nothing_behind(plan_store):
    with pytest.raises(ValidationError):
        await plan_store.create_plan("Half plan", ["Install OS", "  "])
    assert await plan_store.list_plans() == []
    assert await plan_store.list_actions() == []


@pytest.mark.asyncio
async def test_add_item_reuses_action_by_exact_name(plan_store):
    first = await plan_store.create_plan("Weekly", ["Check oil"])
    second = await plan_store.create_plan("Monthly")
    item = await plan_store.add_item(second.id, action_name=" Check oil ")
    assert item.action_id == first.items[0].action_id
    assert len(await plan_store.list_actions()) == 1

    other = await plan_store.add_item(second.id, action_name="check oil")
    assert other.action_id != first.items[0].action_id


@pytest.mark.asyncio
async def test_add_item_by_action_id(plan_store):
    source = await plan_store.create_plan("Source", ["Replace filter"])
    target = await plan_store.create_plan("Target")
    item = await plan_store.add_item(target.id, action_id=source.items[0].action_id)
    assert item.action_name == "Replace filter"

    with pytest.raises(NotFoundError):
        await plan_store.add_item(target.id, action_id="does-not-exist")


@pytest.mark.asyncio
async def test_add_item_requires_a_reference(plan_store):
    plan = await plan_store.create_plan("Plan")
    with pytest.raises(ValidationError):
        await plan_store.add_item(plan.id)
    with pytest.raises(ValidationError):
        await plan_store.add_item(plan.id, action_name="  ")


@pytest.mark.asyncio
async def test_add_item_at_position_shifts_following_items(plan_store):
    plan = await plan_store.create_plan("Plan", ["A", "B", "C"])
    inserted = await plan_store.add_item(plan.id, action_name="X", position=1)
    assert inserted.order_index == 1
    reloaded = await plan_store.get_plan(plan.id)
    assert [item.action_name for item in reloaded.items] == ["A", "X", "B", "C"]
    assert [item.order_index for item in reloaded.items] == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_add_item_position_past_end_appends(plan_store):
    plan = await plan_store.create_plan("Plan", ["A"])
    item = await plan_store.add_item(plan.id, action_name="B", position=99)
    assert item.order_index == 1
    with pytest.raises(ValidationError):
        await plan_store.add_item(plan.id, action_name="C", position=-1)


@pytest.mark.asyncio
async def test_add_item_to_missing_or_deleted_plan(plan_store):
    with pytest.raises(NotFoundError):
        await plan_store.add_item("nope", action_name="A")
    plan = await plan_store.create_plan("Plan")
    await plan_store.delete_plan(plan.id)
    with pytest.raises(NotFoundError):
        await plan_store.add_item(plan.id, action_name="A")


@pytest.mark.asyncio
async def test_remove_item_compacts_order(plan_store):
    plan = await plan_store.create_plan("Plan", ["A", "B", "C"])
    await plan_store.remove_item(plan.items[1].id)
    reloaded = await plan_store.get_plan(plan.id)
    assert [item.action_name for item in reloaded.items] == ["A", "C"]
    assert [item.order_index for item in reloaded.items] == [0, 1]

    with pytest.raises(NotFoundError):
        await plan_store.remove_item(plan.items[1].id)


@pytest.mark.asyncio
async def test_reorder_items(plan_store):
    plan = await plan_store.create_plan("Plan", ["A", "B", "C"])
    a, b, c = (item.id for item in plan.items)
    items = await plan_store.reorder_items(plan.id, [c, a, b])
    assert [item.action_name for item in items] == ["C", "A", "B"]
    assert [item.order_index for item in items] == [0, 1, 2]


@pytest.mark.asyncio
async def test_reorder_rejects_mismatched_ids(plan_store):
    plan = await plan_store.create_plan("Plan", ["A", "B"])
    other = await plan_store.create_plan("Other", ["Z"])
    a, b = (item.id for item in plan.items)
    for bad in ([a], [a, a], [a, b, other.items[0].id], [a, "ghost"]):
        with pytest.raises(ValidationError):
            await plan_store.reorder_items(plan.id, bad)
    reloaded = await plan_store.get_plan(plan.id)
    assert [item.action_name for item in reloaded.items] == ["A", "B"]


@pytest.mark.asyncio
async def test_delete_plan_is_soft(plan_store):
    plan = await plan_store.create_plan("Plan", ["A"])
    deleted = await plan_store.delete_plan(plan.id)
    assert deleted.deleted_at
    assert deleted.items[0].action_name == "A"
    assert await plan_store.list_plans() == []
    assert [p.id for p in await plan_store.list_plans(include_deleted=True)] == [plan.id]
    with pytest.raises(NotFoundError):
        await plan_store.get_plan(plan.id)

    again = await plan_store.delete_plan(plan.id)
    assert again.deleted_at == deleted.deleted_at

    with pytest.raises(NotFoundError):
        await plan_store.delete_plan("missing")


@pytest.mark.asyncio
async def test_rename_plan(plan_store):
    plan = await plan_store.create_plan("Old")
    renamed = await plan_store.rename_plan(plan.id, "New")
    assert renamed.name == "New"
    with pytest.raises(ValidationError):
        await plan_store.rename_plan(plan.id, "")


@pytest.mark.asyncio
async def test_list_plans_sorted_by_name(plan_store):
    await plan_store.create_plan("beta")
    await plan_store.create_plan("Alpha")
    assert [p.name for p in await plan_store.list_plans()] == ["Alpha", "beta"]


@pytest.mark.asyncio
async def test_item_refs_in_create(plan_store):
    seed = await plan_store.create_plan("Seed", ["Torque bolts"])
    plan = await plan_store.create_plan(
        "Mixed",
        [ItemRef(action_id=seed.items[0].action_id), ItemRef(action_name="Grease hinge")],
    )
    assert [item.action_name for item in plan.items] == ["Torque bolts", "Grease hinge"]


@pytest.mark.asyncio
async def test_action_rename_and_delete(plan_store):
    plan = await plan_store.create_plan("Plan", ["A"])
    action_id = plan.items[0].action_id
    renamed = await plan_store.rename_action(action_id, "A prime")
    assert renamed.name == "A prime"
    assert (await plan_store.get_plan(plan.id)).items[0].action_name == "A prime"

    with pytest.raises(ConflictError):
        await plan_store.delete_action(action_id)

    await plan_store.remove_item(plan.items[0].id)
    await plan_store.delete_action(action_id)
    with pytest.raises(NotFoundError):
        await plan_store.get_action(action_id)
    with pytest.raises(NotFoundError):
        await plan_store.rename_action(action_id, "Again")


@pytest.mark.asyncio
async def test_items_of_deleted_plan_are_frozen(plan_store):
    plan = await plan_store.create_plan("Plan", ["A", "B"])
    await plan_store.delete_plan(plan.id)
    with pytest.raises(NotFoundError):
        await plan_store.remove_item(plan.items[0].id)
    with pytest.raises(NotFoundError):
        await plan_store.reorder_items(plan.id, [plan.items[1].id, plan.items[0].id])
    reloaded = await plan_store.get_plan(plan.id, include_deleted=True)
    assert [item.action_name for item in reloaded.items] == ["A", "B"]
