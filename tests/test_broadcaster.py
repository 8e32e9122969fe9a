import json

import pytest

from broadcaster import ConnectionManager, status_update_event, task_added_event

from .fakes import BrokenConnection, FakeConnection


@pytest.mark.asyncio
async def test_failed_viewer_is_pruned_and_others_still_receive() -> None:
    manager = ConnectionManager()
    first, broken, third = FakeConnection("1"), BrokenConnection("2"), FakeConnection("3")
    for conn in (first, broken, third):
        manager.register(conn)

    delivered = await manager.broadcast(status_update_event("working"))

    assert delivered == 2
    assert first.events == [{"type": "status-update", "content": "working"}]
    assert third.events == [{"type": "status-update", "content": "working"}]
    assert manager.connections == {first, third}


@pytest.mark.asyncio
async def test_event_serialized_once_for_all_viewers() -> None:
    manager = ConnectionManager()
    viewers = [FakeConnection(str(i)) for i in range(3)]
    for v in viewers:
        manager.register(v)

    await manager.broadcast(task_added_event({"title": "报告"}))

    messages = {v.sent[0] for v in viewers}
    assert len(messages) == 1
    assert json.loads(messages.pop()) == {"type": "task-added", "task": {"title": "报告"}}


@pytest.mark.asyncio
async def test_broadcast_with_no_viewers() -> None:
    assert await ConnectionManager().broadcast(status_update_event("")) == 0


@pytest.mark.asyncio
async def test_send_to_single_viewer_prunes_on_failure() -> None:
    manager = ConnectionManager()
    broken = BrokenConnection()
    manager.register(broken)

    assert await manager.send(broken, status_update_event("x")) is False
    assert len(manager) == 0


def test_unregister_unknown_connection_is_noop() -> None:
    manager = ConnectionManager()
    manager.unregister(FakeConnection())

    assert len(manager) == 0
