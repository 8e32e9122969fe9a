import json

from broadcaster import status_update_event, task_added_event
from live_feed import LiveFeedClient, LiveFeedState, ws_url

from .fakes import FakeSocket


def test_ws_url_from_api_url() -> None:
    assert ws_url("http://localhost:3000") == "ws://localhost:3000/ws"
    assert ws_url("https://inbox.example.com/") == "wss://inbox.example.com/ws"


def test_status_and_task_events_update_state() -> None:
    state = LiveFeedState()
    client = LiveFeedClient("ws://x/ws", state)

    assert client.handle_message(json.dumps(status_update_event("# Status\nworking\n"))) is True
    assert client.handle_message(json.dumps(task_added_event({"id": "1", "title": "a"}))) is True
    assert client.handle_message(json.dumps(task_added_event({"id": "2", "title": "b"}))) is True

    snap = state.snapshot()
    assert snap["status"] == "# Status\nworking\n"
    assert [t["title"] for t in snap["recent_tasks"]] == ["b", "a"]
    assert snap["version"] == 3


def test_unknown_or_broken_messages_ignored() -> None:
    state = LiveFeedState()
    client = LiveFeedClient("ws://x/ws", state)

    assert client.handle_message("not json") is False
    assert client.handle_message(json.dumps(["list"])) is False
    assert client.handle_message(json.dumps({"type": "ping"})) is False
    assert state.snapshot()["version"] == 0
    assert state.snapshot()["status"] is None


def test_recent_tasks_capped() -> None:
    state = LiveFeedState(max_tasks=2)
    for i in range(3):
        state.apply(task_added_event({"id": str(i)}))

    assert [t["id"] for t in state.snapshot()["recent_tasks"]] == ["2", "1"]


def test_reconnects_after_connection_lost() -> None:
    state = LiveFeedState()
    calls = []
    connected_during_session = []

    class RecordingSocket(FakeSocket):
        def __iter__(self):
            connected_during_session.append(state.connected)
            return super().__iter__()

    def fake_connect(url, **kwargs):
        calls.append(url)
        if len(calls) == 1:
            return RecordingSocket([json.dumps(status_update_event("working"))])
        client.stop()
        raise OSError("connection refused")

    client = LiveFeedClient("ws://x/ws", state, reconnect_delay=0, connect_fn=fake_connect)
    client.run()

    assert calls == ["ws://x/ws", "ws://x/ws"]
    assert connected_during_session == [True]
    assert state.snapshot()["status"] == "working"
    assert state.snapshot()["connected"] is False


def test_stop_closes_open_connection() -> None:
    client = LiveFeedClient("ws://x/ws", LiveFeedState())
    sock = FakeSocket()
    client._ws = sock

    client.stop()

    assert sock.closed is True
