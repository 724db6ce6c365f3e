"""
Pytest configuration.

Provides a coordinator wired to fake control connections so routing can be exercised
without sockets.
"""

import json
import os
import sys

import pytest

# Add project root and this directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from backend import ConnectionRegistry, RoomRegistry  # noqa: E402
from coordinator import Coordinator  # noqa: E402
from fakes import FakeConnection  # noqa: E402


@pytest.fixture
def delivery_log():
    return []


@pytest.fixture
def coordinator():
    room_ids = iter(["ab12cd34", "ef56ab78", "cd90ef12"])
    return Coordinator(ConnectionRegistry(), RoomRegistry(room_id_factory=room_ids.__next__))


@pytest.fixture
def connect(coordinator, delivery_log):
    """Register a fake connection; returns (client_id, connection)."""

    def _connect(connection_cls=FakeConnection):
        connection = connection_cls(delivery_log)
        client_id = coordinator.connect(connection)
        connection.client_id = client_id
        return client_id, connection

    return _connect


@pytest.fixture
def send(coordinator):
    """Route a message as it would arrive on the wire."""

    def _send(sender_id, kind, payload=None):
        body = {"type": kind}
        if payload is not None:
            body["payload"] = payload
        coordinator.route(sender_id, json.dumps(body))

    return _send


@pytest.fixture
def room_with_members(connect, send):
    """Room ab12cd34 hosted by H with approved members A and B; all inboxes cleared."""
    host_id, host = connect()
    send(host_id, "create_room", {"name": "Host"})
    members = {"H": (host_id, host)}
    for label in ("A", "B"):
        client_id, connection = connect()
        send(client_id, "join_request", {"roomId": "ab12cd34", "name": label})
        send(host_id, "approve_join", {"targetClientId": client_id})
        members[label] = (client_id, connection)
    for _, connection in members.values():
        connection.clear()
    return members
