"""
Event notification pipeline.

A process-wide broker with ``publish(channel, message)`` and
``subscribe(channel) -> Subscription``. The channel of an order is its
order_id. Delivery is best-effort and at-most-once: a subscriber only sees
messages published after it subscribed.

Backends:
    - MemoryBroker: in-process fan-out (development, tests, single worker)
    - RedisBroker: Redis pub/sub (multi-process deployments)
"""

import json
import logging
import queue
import threading
from datetime import datetime, timezone

from flask import current_app

logger = logging.getLogger(__name__)

_CLOSED = object()


class MemorySubscription:
    """Queue-backed subscription handed out by MemoryBroker."""

    def __init__(self, broker, channel):
        self.channel = channel
        self._broker = broker
        self._queue = queue.Queue()
        self._closed = threading.Event()

    def deliver(self, message):
        if not self._closed.is_set():
            self._queue.put(message)

    def get(self, timeout=None):
        """Return the next message, or None on timeout or after close."""
        if self._closed.is_set() and self._queue.empty():
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        return None if item is _CLOSED else item

    @property
    def closed(self):
        return self._closed.is_set()

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        self._broker._unsubscribe(self)
        self._queue.put(_CLOSED)

    def __iter__(self):
        while not self._closed.is_set():
            message = self.get(timeout=1.0)
            if message is not None:
                yield message


class MemoryBroker:
    def __init__(self):
        self._channels: dict[str, set] = {}
        self._lock = threading.Lock()

    def publish(self, channel, message):
        with self._lock:
            subscribers = list(self._channels.get(channel, ()))
        for sub in subscribers:
            sub.deliver(message)
        return len(subscribers)

    def subscribe(self, channel):
        sub = MemorySubscription(self, channel)
        with self._lock:
            self._channels.setdefault(channel, set()).add(sub)
        return sub

    def _unsubscribe(self, sub):
        with self._lock:
            subs = self._channels.get(sub.channel)
            if subs is not None:
                subs.discard(sub)
                if not subs:
                    del self._channels[sub.channel]

    def subscriber_count(self, channel):
        with self._lock:
            return len(self._channels.get(channel, ()))

    def ping(self):
        return True


class RedisSubscription:
    def __init__(self, client, channel):
        self.channel = channel
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(channel)
        self._closed = threading.Event()

    def get(self, timeout=None):
        if self._closed.is_set():
            return None
        message = self._pubsub.get_message(timeout=timeout or 0)
        if message is None or message.get("type") != "message":
            return None
        return message["data"]

    @property
    def closed(self):
        return self._closed.is_set()

    def close(self):
        if self._closed.is_set():
            return
        self._closed.set()
        self._pubsub.close()

    def __iter__(self):
        while not self._closed.is_set():
            message = self.get(timeout=1.0)
            if message is not None:
                yield message


class RedisBroker:
    def __init__(self, redis_url):
        import redis as _redis

        self._client = _redis.from_url(redis_url, decode_responses=True)

    def publish(self, channel, message):
        return self._client.publish(channel, message)

    def subscribe(self, channel):
        return RedisSubscription(self._client, channel)

    def ping(self):
        return self._client.ping()


def init_broker(app):
    """Create the broker for ``REDIS_URL`` and store it on the app."""
    redis_url = app.config.get("REDIS_URL") or "memory://"
    if redis_url.startswith("memory://"):
        broker = MemoryBroker()
    else:
        broker = RedisBroker(redis_url)
    app.extensions["broker"] = broker
    logger.info("Notification broker: %s", type(broker).__name__)
    return broker


def get_broker(app=None):
    app = app or current_app
    return app.extensions["broker"]


def format_event(kind: str, data) -> str:
    return json.dumps(
        {"type": kind, "data": data, "ts": datetime.now(timezone.utc).isoformat()},
        ensure_ascii=False,
        default=str,
    )


def publish_event(channel: str, kind: str, data, app=None) -> bool:
    """Publish one event; failures are logged and reported as False."""
    try:
        get_broker(app).publish(channel, format_event(kind, data))
        return True
    except Exception as exc:
        logger.warning("Publish to channel %s failed: %s", channel, exc,
                       extra={"order_id": channel})
        return False
