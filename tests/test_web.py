"""Tests for the dashboard web service."""

import queue

import pytest
from starlette.testclient import TestClient

from rustctl.game.snapshot import Command, Phase, SharedState
from rustctl.web.setup import create_app


@pytest.fixture
def shared() -> SharedState:
    state = SharedState()
    state.set_phase(Phase.RUNNING_HEALTHY, build_id=17264843, pid=4242)
    return state


@pytest.fixture
def client(shared: SharedState) -> TestClient:
    return TestClient(create_app(shared, sync_interval=0.01))


def test_state_returns_the_snapshot(client: TestClient) -> None:
    response = client.get("/state")

    assert response.status_code == 200
    assert response.json() == {
        "phase": "RunningHealthy",
        "build_id": 17264843,
        "pid": 4242,
        "cpu_percent": None,
        "memory_rss": None,
    }


def test_responses_carry_security_headers(client: TestClient) -> None:
    response = client.get("/state")

    assert response.headers["X-Frame-Options"] == "DENY"
    assert response.headers["X-Content-Type-Options"] == "nosniff"


def test_socket_pushes_snapshots(client: TestClient, shared: SharedState) -> None:
    with client.websocket_connect("/sock") as websocket:
        first = websocket.receive_json()
        shared.set_usage(12.5, 1024)
        # Snapshots keep coming; wait for one showing the new usage.
        for _ in range(200):
            latest = websocket.receive_json()
            if latest["cpu_percent"] is not None:
                break

    assert first["phase"] == "RunningHealthy"
    assert latest["cpu_percent"] == 12.5
    assert latest["memory_rss"] == 1024


def test_socket_queues_commands(client: TestClient, shared: SharedState) -> None:
    with client.websocket_connect("/sock") as websocket:
        websocket.receive_json()
        websocket.send_text('{"_type": "Nope"}')
        websocket.send_text("not json")
        websocket.send_json({"_type": "Stop"})
        command = shared.commands.get(timeout=5)

    assert command is Command.STOP
    with pytest.raises(queue.Empty):
        shared.commands.get_nowait()
