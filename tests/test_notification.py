"""
Event broker, observer sessions and the Socket.IO feed.
"""

import json
import threading
import time
from unittest.mock import MagicMock

import pytest

from sqlgate.realtime import NAMESPACE, active_sessions, socketio
from sqlgate.services.notification import MemoryBroker, format_event, get_broker, publish_event
from sqlgate.services.observer import ObserverSession


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


class TestMemoryBroker:
    def test_fan_out_to_every_subscriber_of_the_channel(self):
        broker = MemoryBroker()
        a, b = broker.subscribe("o-1"), broker.subscribe("o-1")
        other = broker.subscribe("o-2")

        assert broker.publish("o-1", "hello") == 2
        assert a.get(timeout=0.1) == "hello"
        assert b.get(timeout=0.1) == "hello"
        assert other.get(timeout=0.05) is None

    def test_late_subscriber_misses_earlier_messages(self):
        broker = MemoryBroker()
        broker.publish("o-1", "early")
        sub = broker.subscribe("o-1")
        assert sub.get(timeout=0.05) is None

    def test_close_unsubscribes(self):
        broker = MemoryBroker()
        sub = broker.subscribe("o-1")
        sub.close()
        sub.close()
        assert sub.closed
        assert broker.subscriber_count("o-1") == 0
        assert broker.publish("o-1", "x") == 0
        assert list(sub) == []

    def test_close_wakes_a_blocked_reader(self):
        broker = MemoryBroker()
        sub = broker.subscribe("o-1")
        got = []
        reader = threading.Thread(target=lambda: got.append(sub.get()))
        reader.start()
        sub.close()
        reader.join(2)
        assert got == [None]


class TestPublishEvent:
    def test_event_shape(self):
        event = json.loads(format_event("status", "task started"))
        assert event["type"] == "status"
        assert event["data"] == "task started"
        assert "ts" in event

    def test_publish_through_app_broker(self, app):
        sub = get_broker(app).subscribe("o-9")
        assert publish_event("o-9", "output", "line 1") is True
        assert json.loads(sub.get(timeout=0.5))["data"] == "line 1"
        sub.close()

    def test_broker_failure_is_reported_not_raised(self, app, monkeypatch):
        broken = MagicMock()
        broken.publish.side_effect = ConnectionError("redis down")
        monkeypatch.setitem(app.extensions, "broker", broken)
        assert publish_event("o-1", "status", "x") is False


class TestObserverSession:
    def test_forward_until_subscription_closes(self):
        broker = MemoryBroker()
        sub = broker.subscribe("o-1")
        sent, closed = [], []
        session = ObserverSession(sub, sent.append, on_close=lambda: closed.append(True))
        worker = threading.Thread(target=session.forward)
        worker.start()

        broker.publish("o-1", "one")
        broker.publish("o-1", "two")
        assert _wait_for(lambda: sent == ["one", "two"])

        session.client_closed()
        worker.join(3)
        assert not worker.is_alive()
        assert closed == [True]
        assert broker.subscriber_count("o-1") == 0

    def test_send_failure_tears_down_both_sides(self):
        broker = MemoryBroker()
        sub = broker.subscribe("o-1")
        closed = []

        def send(message):
            raise ConnectionError("client gone")

        session = ObserverSession(sub, send, on_close=lambda: closed.append(True))
        worker = threading.Thread(target=session.forward)
        worker.start()
        broker.publish("o-1", "boom")
        worker.join(3)

        assert session.closed
        assert sub.closed
        assert closed == [True]
        session.client_closed()
        assert closed == [True]


class TestSocketFeed:
    def test_observer_receives_channel_events(self, app):
        client = socketio.test_client(app, namespace=NAMESPACE, query_string="channel=order-42")
        assert client.is_connected(NAMESPACE)
        assert _wait_for(lambda: get_broker(app).subscriber_count("order-42") == 1)

        publish_event("order-42", "status", "task started", app=app)
        publish_event("other", "status", "ignored", app=app)

        received = []

        def collect():
            received.extend(client.get_received(NAMESPACE))
            return len(received) >= 1

        assert _wait_for(collect)
        assert received[0]["name"] == "message"
        assert json.loads(received[0]["args"][0])["data"] == "task started"

        client.emit("message", "ignored input", namespace=NAMESPACE)
        client.disconnect(namespace=NAMESPACE)
        assert _wait_for(lambda: get_broker(app).subscriber_count("order-42") == 0)
        assert _wait_for(lambda: active_sessions() == 0)

    def test_channel_is_required(self, app):
        client = socketio.test_client(app, namespace=NAMESPACE)
        assert not client.is_connected(NAMESPACE)
