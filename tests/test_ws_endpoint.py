"""Tests for the /ws broadcast endpoint.

Uses starlette's TestClient websocket_connect against a minimal app with a
real ConnectionRegistry placed on app.state (no lifespan).
"""

from __future__ import annotations

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from src.dealflow.api.v1.ws import router
from src.dealflow.sync.registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def app(registry):
    test_app = FastAPI()
    test_app.include_router(router)
    test_app.state.broadcast_registry = registry
    return test_app


@pytest.fixture
def client(app):
    return TestClient(app)


def test_connect_tracks_anonymous_connection(client, registry):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong", "data": {}}
        assert registry.stats()["anonymous_connections"] == 1

    assert registry.stats()["connections"] == 0


def test_register_acknowledged(client, registry):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "register", "userId": 7})
        assert ws.receive_json() == {"type": "registered", "data": {"userId": 7}}
        assert registry.is_connected(7)

    assert not registry.is_connected(7)


def test_bare_ping_string(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_text("ping")
        assert ws.receive_json()["type"] == "pong"


def test_unknown_frames_are_ignored(client):
    """Garbage and unknown types get no reply; the socket stays usable."""
    with client.websocket_connect("/ws") as ws:
        ws.send_text("not json")
        ws.send_json({"type": "subscribe", "topic": "deals"})
        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"


def test_registry_missing_closes_connection():
    app = FastAPI()
    app.include_router(router)
    client = TestClient(app)

    with pytest.raises(WebSocketDisconnect) as info:
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
    assert info.value.code == 1013
