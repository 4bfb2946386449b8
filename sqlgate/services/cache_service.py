"""
Cache / lookup store.

Provides a thin key-value wrapper with TTL used for:
  - gh-ost control socket paths (one per executing order)
  - effective-permission results (5 min TTL)

Uses Redis when REDIS_URL is a redis URL, falls back to
a simple in-memory dict for development/testing.
"""

import json
import logging
import threading
import time

logger = logging.getLogger(__name__)

# ── In-memory fallback ───────────────────────────────────────────────────


class _MemoryBackend:
    """Simple dict cache for dev/testing."""

    def __init__(self):
        self._store: dict = {}  # key → (value, expire_ts)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            val, expires = entry
            if expires and time.time() > expires:
                self._store.pop(key, None)
                return None
            return val

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._store[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            for k in keys:
                self._store.pop(k, None)

    def keys(self, pattern):
        """Simple glob matching for 'prefix*' patterns."""
        with self._lock:
            if pattern.endswith("*"):
                prefix = pattern[:-1]
                return [k for k in self._store if k.startswith(prefix)]
            return [k for k in self._store if k == pattern]

    def flushdb(self):
        with self._lock:
            self._store.clear()

    def ping(self):
        return True


# ── Singleton cache backend ──────────────────────────────────────────────

_backend = None


def _create_backend(redis_url: str | None):
    if redis_url and not redis_url.startswith("memory://"):
        import redis as _redis

        try:
            backend = _redis.from_url(redis_url, decode_responses=True)
            backend.ping()
            logger.info("Cache: using Redis at %s", redis_url.split("@")[-1])
            return backend
        except _redis.RedisError as exc:
            logger.warning("Redis unavailable (%s), falling back to memory cache", exc)
    return _MemoryBackend()


def init_cache(app):
    """Select the backend from ``REDIS_URL`` of the app config."""
    global _backend
    _backend = _create_backend(app.config.get("REDIS_URL"))


def _get_backend():
    """Lazy-initialise Redis or fall back to in-memory."""
    global _backend
    if _backend is None:
        import os
        _backend = _create_backend(os.getenv("REDIS_URL"))
    return _backend


# ── Default TTLs ─────────────────────────────────────────────────────────

PERMISSION_TTL = 300   # 5 minutes
DEFAULT_TTL = 300


# ── Key builders ─────────────────────────────────────────────────────────

def _socket_key(order_id):
    return f"ghost:socket:{order_id}"


def _perm_key(username):
    return f"perm:{username}"


# ── Public API ───────────────────────────────────────────────────────────


def remember_socket(order_id, socket_path, ttl):
    """Record the control socket of a running gh-ost process."""
    _get_backend().setex(_socket_key(order_id), ttl, socket_path)


def lookup_socket(order_id):
    """Return the recorded control socket path, or None."""
    return _get_backend().get(_socket_key(order_id))


def forget_socket(order_id):
    _get_backend().delete(_socket_key(order_id))


def get_cached_permissions(username):
    """Return cached effective permissions (list of dicts), or None on miss."""
    raw = _get_backend().get(_perm_key(username))
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def set_cached_permissions(username, permissions):
    _get_backend().setex(_perm_key(username), PERMISSION_TTL, json.dumps(permissions))


def invalidate_permissions(username=None):
    """Drop one user's cached permissions, or everyone's."""
    be = _get_backend()
    if username is not None:
        be.delete(_perm_key(username))
        return
    keys = be.keys("perm:*")
    if keys:
        be.delete(*keys)


def clear_all():
    """Flush entire cache (mainly for testing)."""
    _get_backend().flushdb()


def health_check():
    """Return cache backend status."""
    try:
        be = _get_backend()
        be.ping()
        backend_type = "redis" if not isinstance(be, _MemoryBackend) else "memory"
        return {"status": "ok", "backend": backend_type}
    except Exception as exc:
        return {"status": "error", "detail": str(exc)}
