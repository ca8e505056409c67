# tests/test_server.py
"""Tests for the append-only log server and the network client against it."""

from __future__ import annotations

import socket
import threading
import time

import pytest

from client.chat import ChatSession
from client.net import ChildEventListener
from client.settings import MODE_AES
from common.messages import MessageRecord
from server.state import LogState, Outbox, Subscription


def wait_for(condition, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.01)
    return condition()


def collecting_sub(sub_id, path="p", conn=None):
    got = []
    sub = Subscription(sub_id=sub_id, path=path, conn=conn, deliver=lambda p, k, v: got.append((k, v)))
    return sub, got


class TestLogState:
    def test_append_assigns_increasing_keys(self):
        state = LogState()
        keys = [state.append("p", {"n": i}) for i in range(3)]
        assert keys == sorted(keys)
        assert [v["n"] for _, v in state.children("p")] == [0, 1, 2]

    def test_subscribe_replays_then_streams(self):
        state = LogState()
        state.append("p", {"n": 1})
        sub, got = collecting_sub("1")
        assert state.subscribe(sub) == 1
        state.append("p", {"n": 2})
        assert [v["n"] for _, v in got] == [1, 2]

    def test_paths_are_independent(self):
        state = LogState()
        sub, got = collecting_sub("1", path="a")
        state.subscribe(sub)
        state.append("b", {"n": 1})
        assert got == []
        assert state.children("a") == []

    def test_unsubscribe(self):
        state = LogState()
        conn = object()
        sub, got = collecting_sub("1", conn=conn)
        state.subscribe(sub)
        assert state.unsubscribe(conn, "1")
        assert not state.unsubscribe(conn, "1")
        state.append("p", {"n": 1})
        assert got == []

    def test_drop_connection(self):
        state = LogState()
        conn = object()
        for sub_id in ("1", "2"):
            state.subscribe(collecting_sub(sub_id, conn=conn)[0])
        state.subscribe(collecting_sub("3", conn=object())[0])
        assert state.drop_connection(conn) == 2
        assert state.subscriber_count("p") == 1

    def test_dead_subscriber_is_removed(self):
        state = LogState()

        def broken(path, key, value):
            raise BrokenPipeError("gone")

        state.subscribe(Subscription(sub_id="1", path="p", conn=None, deliver=broken))
        ok, got = collecting_sub("2")
        state.subscribe(ok)
        state.append("p", {"n": 1})
        assert state.subscriber_count("p") == 1
        assert len(got) == 1

    def test_stalled_subscriber_does_not_block_other_paths(self):
        state = LogState()
        release = threading.Event()
        stalled = Outbox(lambda env: release.wait(10))
        state.subscribe(Subscription(sub_id="1", path="room", conn=None,
                                     deliver=lambda p, k, v: stalled.put({"key": k})))
        other, got = collecting_sub("2", path="other")
        state.subscribe(other)
        try:
            done = []
            workers = [
                threading.Thread(target=lambda p=p: done.append(state.append(p, {"n": 1})))
                for p in ("room", "room", "other")
            ]
            for t in workers:
                t.start()
            for t in workers:
                t.join(timeout=2.0)
            assert len(done) == 3
            assert len(got) == 1
            late, late_got = collecting_sub("3", path="room")
            assert state.subscribe(late) == 2
            assert len(late_got) == 2
        finally:
            release.set()
            stalled.close()

    def test_outbox_keeps_order_and_reports_dead_writer(self):
        sent = []

        def send(env):
            if env["n"] == 3:
                raise BrokenPipeError("gone")
            sent.append(env["n"])

        box = Outbox(send)
        for n in range(1, 4):
            box.put({"n": n})
        box.writer.join(timeout=2.0)
        assert sent == [1, 2]
        with pytest.raises(ConnectionError):
            box.put({"n": 4})


class Recorder(ChildEventListener):
    def __init__(self):
        self.children = []
        self.cancelled = []

    def on_child_added(self, key, value):
        self.children.append((key, value))

    def on_cancelled(self, error):
        self.cancelled.append(error)


class TestNetClient:
    def test_fetch_config(self, net_client):
        assert net_client.fetch_config() == {"secure_msg_length": 42}

    def test_push_and_listen(self, net_client):
        ref = net_client.reference("room")
        rec = ref.add_child_event_listener(Recorder())
        for i in range(20):
            ref.push({"name": "a", "text": str(i)})
        assert wait_for(lambda: len(rec.children) == 20)
        assert [v["text"] for _, v in rec.children] == [str(i) for i in range(20)]

    def test_late_listener_gets_history(self, net_client, log_server):
        _, _, state = log_server
        ref = net_client.reference("room")
        ref.push({"name": "a", "text": "early"})
        assert wait_for(lambda: len(state.children("room")) == 1)
        rec = ref.add_child_event_listener(Recorder())
        assert wait_for(lambda: len(rec.children) == 1)
        assert rec.children[0][1] == {"name": "a", "text": "early"}

    def test_remove_listener_unsubscribes(self, net_client, log_server):
        _, _, state = log_server
        ref = net_client.reference("room")
        rec = ref.add_child_event_listener(Recorder())
        assert wait_for(lambda: state.subscriber_count("room") == 1)
        ref.remove_event_listener(rec)
        assert wait_for(lambda: state.subscriber_count("room") == 0)

    def test_connection_loss_cancels_listeners(self, net_client):
        rec = net_client.reference("room").add_child_event_listener(Recorder())
        net_client.sock.shutdown(socket.SHUT_RDWR)
        assert wait_for(lambda: len(rec.cancelled) == 1)
        assert rec.cancelled[0].code == "DISCONNECTED"
        with pytest.raises(ConnectionError):
            net_client.reference("room").push({"name": "a", "text": "x"})

    def test_subscribe_on_dead_connection_leaves_no_listener(self, net_client):
        net_client.sock.shutdown(socket.SHUT_RDWR)
        assert wait_for(lambda: not net_client.running)
        with pytest.raises(ConnectionError):
            net_client.reference("room").add_child_event_listener(Recorder())
        assert net_client.listener_count() == 0

    def test_reconnect_after_connection_loss(self, net_client, log_server):
        _, _, state = log_server
        ref = net_client.reference("room")
        ref.push({"name": "a", "text": "before"})
        assert wait_for(lambda: len(state.children("room")) == 1)
        stale = ref.add_child_event_listener(Recorder())
        net_client.sock.shutdown(socket.SHUT_RDWR)
        assert wait_for(lambda: len(stale.cancelled) == 1)

        net_client.connect()
        assert net_client.listener_count() == 0
        rec = ref.add_child_event_listener(Recorder())
        ref.push({"name": "a", "text": "after"})
        assert wait_for(lambda: len(rec.children) == 2)
        assert [v["text"] for _, v in rec.children] == ["before", "after"]
        assert rec.cancelled == []

    def test_bad_push_is_rejected(self, net_client, log_server, caplog):
        _, _, state = log_server
        net_client.send({"type": "push", "sender": None, "to": None, "ts": "", "payload": {"path": "room", "value": "x"}})
        assert wait_for(lambda: "BAD_VALUE" in caplog.text)
        assert state.children("room") == []


class TestEndToEnd:
    def test_two_sessions_share_encrypted_log(self, log_server, codec, mode):
        from client.net import NetClient

        host, port, state = log_server
        mode.set(MODE_AES)
        alice_net, bob_net = NetClient(host, port, "alice"), NetClient(host, port, "bob")
        alice_net.connect()
        bob_net.connect()
        alice = ChatSession(alice_net.reference(), codec, mode)
        bob = ChatSession(bob_net.reference(), codec, mode)
        try:
            alice.sign_in("alice")
            bob.sign_in("bob")
            alice.send_text("hello")
            assert wait_for(lambda: len(state.children("public-messages")) == 1)
            bob.send_photo("https://example.org/cat.jpg")

            assert wait_for(lambda: len(bob.snapshot()) == 2 and len(alice.snapshot()) == 2)
            expected = [
                MessageRecord(sender_name="alice", text="hello"),
                MessageRecord(sender_name="bob", photo_url="https://example.org/cat.jpg"),
            ]
            assert bob.snapshot() == expected
            assert alice.snapshot() == expected

            stored = [v for _, v in state.children("public-messages")]
            assert stored[0]["text"] != "hello"
            assert stored[0]["name"] != "alice"
        finally:
            alice.close()
            bob.close()
            alice_net.close()
            bob_net.close()

    def test_subscription_error_reaches_session(self, net_client, codec, mode):
        errors = []
        session = ChatSession(net_client.reference(), codec, mode, on_error=errors.append)
        try:
            session.sign_in("alice")
            net_client.sock.shutdown(socket.SHUT_RDWR)
            assert wait_for(lambda: len(errors) == 1)
            assert session.stream.attached
        finally:
            session.close()
