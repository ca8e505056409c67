# tests/conftest.py
from __future__ import annotations

import socket
import threading
from typing import Any, List, Tuple

import pytest

from client.net import ChildEventListener, LogError, NetClient
from client.settings import EncryptionModeSwitch, Preferences
from common.crypto import CipherCodec
from server.main import serve
from server.state import LogState

TEST_KEY = bytes(range(16))


class FakeLog:
    """In-memory ordered collection with synchronous delivery.

    Mirrors the log server's contract: a new listener first gets every
    existing child in order, then each push as it happens.
    """

    def __init__(self) -> None:
        self.children: List[Tuple[str, Any]] = []
        self.listeners: List[ChildEventListener] = []
        self.removed: List[ChildEventListener] = []

    def push(self, value: Any) -> str:
        key = f"{len(self.children) + 1:012d}"
        self.children.append((key, value))
        for listener in list(self.listeners):
            listener.on_child_added(key, value)
        return key

    def add_child_event_listener(self, listener: ChildEventListener) -> ChildEventListener:
        for key, value in self.children:
            listener.on_child_added(key, value)
        self.listeners.append(listener)
        return listener

    def remove_event_listener(self, listener: ChildEventListener) -> None:
        self.listeners.remove(listener)
        self.removed.append(listener)

    def cancel(self, code: str = "DISCONNECTED") -> None:
        for listener in list(self.listeners):
            listener.on_cancelled(LogError(code))


@pytest.fixture
def codec() -> CipherCodec:
    c = CipherCodec(TEST_KEY)
    c.initialize()
    return c


@pytest.fixture
def fake_log() -> FakeLog:
    return FakeLog()


@pytest.fixture
def prefs() -> Preferences:
    return Preferences()


@pytest.fixture
def mode(prefs: Preferences) -> EncryptionModeSwitch:
    return EncryptionModeSwitch(prefs)


@pytest.fixture
def log_server():
    """Real log server on an ephemeral loopback port; yields (host, port, state)."""
    state = LogState()
    srv = socket.create_server(("127.0.0.1", 0))
    host, port = srv.getsockname()[:2]
    thread = threading.Thread(
        target=serve, args=(srv, state, {"secure_msg_length": 42}), daemon=True
    )
    thread.start()
    yield host, port, state
    try:
        srv.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    srv.close()


@pytest.fixture
def net_client(log_server):
    host, port, _ = log_server
    client = NetClient(host, port, name="tester")
    client.connect()
    yield client
    client.close()
