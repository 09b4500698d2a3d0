import asyncio
import time

import pytest

from menugen.services.progress_tracker import ProgressTracker

SECTIONS = [{"name": "Mains", "position": 0, "dishes": [
    {"name": "Soup", "position": 0},
    {"name": "Steak", "position": 1},
    {"name": "Tart", "position": 2},
]}]


async def tracked_menu(store, tracker, image_hash):
    menu = await store.create_menu(image_hash, None)
    dishes = await store.persist_structure(menu["id"], "USD", SECTIONS)
    await tracker.start_tracking(menu["id"], len(dishes))
    return menu["id"], dishes


async def test_slow_subscriber_does_not_hold_up_other_menus(build, store, image_bytes):
    container = build()
    slow_menu = await store.create_menu("slow-hash", None)
    fast_menu = await store.create_menu("fast-hash", None)

    async def slow_client(view):
        await asyncio.sleep(1)

    await container.tracker.subscribe(slow_menu["id"], slow_client)

    started = time.monotonic()
    slow_run = asyncio.create_task(container.pipeline.run(slow_menu["id"], image_bytes))
    await container.pipeline.run(fast_menu["id"], image_bytes)
    fast_elapsed = time.monotonic() - started
    await slow_run
    slow_elapsed = time.monotonic() - started

    assert fast_elapsed < 0.5
    assert slow_elapsed < 0.5
    assert (await store.get_menu(fast_menu["id"]))["status"] == "COMPLETE"
    assert (await store.get_menu(slow_menu["id"]))["status"] == "COMPLETE"

    await container.close()


async def test_slow_subscriber_does_not_push_menu_past_timeout(build, store, image_bytes):
    container = build(pipeline_timeout=0.5)
    menu = await store.create_menu("stuck-client-hash", None)

    async def stuck_client(view):
        await asyncio.Event().wait()

    await container.tracker.subscribe(menu["id"], stuck_client)
    await container.pipeline.run(menu["id"], image_bytes)

    saved = await store.get_menu(menu["id"])
    assert saved["status"] == "COMPLETE"
    assert saved["failure_code"] is None

    await container.close()


async def test_timed_out_update_is_skipped_and_delivery_continues(store):
    tracker = ProgressTracker(store, cleanup_delay=0, notify_timeout=0.05)
    menu_id, dishes = await tracked_menu(store, tracker, "timeout-hash")
    received = []

    async def client(view):
        if not received:
            received.append("stalled")
            await asyncio.sleep(1)
        received.append(view["processed_dishes"])

    await tracker.subscribe(menu_id, client)
    for dish in dishes:
        await tracker.record_dish_settled(menu_id, dish["id"], "COMPLETE", description="Good.")
    await tracker.flush()

    assert received == ["stalled", 1, 2, 3]
    await tracker.close()


async def test_failing_subscriber_keeps_receiving(store):
    tracker = ProgressTracker(store, cleanup_delay=0)
    menu_id, dishes = await tracked_menu(store, tracker, "failing-hash")
    received = []

    async def client(view):
        received.append(view["processed_dishes"])
        if len(received) == 1:
            raise ConnectionResetError("client went away")

    await tracker.subscribe(menu_id, client)
    for dish in dishes[:2]:
        await tracker.record_dish_settled(menu_id, dish["id"], "FAILED", failure_reason="x")
    await tracker.flush()

    assert received == [0, 1, 2]
    await tracker.close()


async def test_subscriber_gets_snapshot_then_updates_in_order(store):
    tracker = ProgressTracker(store, cleanup_delay=0)
    menu_id, dishes = await tracked_menu(store, tracker, "ordered-hash")
    received = []

    async def client(view):
        received.append((view["status"], view["processed_dishes"]))

    await tracker.subscribe(menu_id, client)
    for dish in dishes:
        await tracker.record_dish_settled(menu_id, dish["id"], "COMPLETE", description="Good.")
    await tracker.finish(menu_id, "COMPLETE")
    await tracker.flush()

    assert received == [
        ("PROCESSING", 0),
        ("PROCESSING", 1),
        ("PROCESSING", 2),
        ("PROCESSING", 3),
        ("COMPLETE", 3),
    ]
    assert await tracker.get_progress(menu_id) is None
    await tracker.close()


async def test_unsubscribed_client_gets_nothing_more(store):
    tracker = ProgressTracker(store, cleanup_delay=0)
    menu_id, dishes = await tracked_menu(store, tracker, "unsub-hash")
    received = []

    async def client(view):
        received.append(view["processed_dishes"])

    await tracker.subscribe(menu_id, client)
    await tracker.flush()
    await tracker.unsubscribe(menu_id, client)
    await tracker.record_dish_settled(menu_id, dishes[0]["id"], "COMPLETE", description="Good.")
    await tracker.flush()

    assert received == [0]
    await tracker.close()


async def test_dish_cannot_settle_as_pending(store):
    tracker = ProgressTracker(store, cleanup_delay=0)
    menu_id, dishes = await tracked_menu(store, tracker, "pending-hash")

    with pytest.raises(ValueError, match="cannot settle as PENDING"):
        await tracker.record_dish_settled(menu_id, dishes[0]["id"], "PENDING")

    assert (await store.get_menu(menu_id))["processed_dishes"] == 0
    assert len(await store.list_dishes(menu_id, status="PENDING")) == 3
    await tracker.close()
