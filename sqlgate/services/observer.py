"""
Observer session: forwards one subscription to one live connection.

Two loops end the session: the transport notices the client went away and
calls ``client_closed()``, or ``forward()`` stops because the subscription is
exhausted or a send failed. Whichever happens first tears down both sides.
"""

import logging
import threading

logger = logging.getLogger(__name__)


class ObserverSession:
    def __init__(self, subscription, send, on_close=None):
        self.subscription = subscription
        self._send = send
        self._on_close = on_close
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self):
        return self._closed

    def forward(self):
        """Blocking loop: push every subscription message to the observer."""
        try:
            for message in self.subscription:
                if self._closed:
                    break
                self._send(message)
        except Exception as exc:
            logger.info("Observer on channel %s stopped: %s", self.subscription.channel, exc)
        finally:
            self.close()

    def client_closed(self):
        self.close()

    def close(self):
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self.subscription.close()
        if self._on_close is not None:
            self._on_close()
