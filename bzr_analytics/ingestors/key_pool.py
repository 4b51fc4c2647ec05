# ingestors/key_pool.py
import time
import logging
import threading
from typing import Dict, Iterable, List, Optional

from bzr_analytics.config import config

logger = logging.getLogger(__name__)


def mask_key(key: Optional[str]) -> str:
    """Render a credential for logs without leaking it"""
    if not key:
        return '<none>'
    return '***' + key[-4:]


class ApiKeyPool:
    """
    Round-robin credentials for one provider.

    next() skips keys whose backoff window is still open and returns None only
    when every key is backed off. Expired backoffs are cleared lazily on the
    next lookup. All access is serialized by a lock so concurrent chain loops
    can share one pool.
    """

    def __init__(self, provider: str, keys: Iterable[str] = (),
                 default_backoff_seconds: float = None, clock=time.time):
        self.provider = provider
        self.default_backoff_seconds = (
            default_backoff_seconds if default_backoff_seconds is not None else config.KEY_BACKOFF_SECONDS
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._keys: List[str] = []
        self._index = 0
        self._backoff_until: Dict[str, float] = {}
        self.set_keys(keys)

    def set_keys(self, keys: Iterable[str]):
        """Replace the key list, keeping backoff windows of keys that survive"""
        sanitized = []
        for key in keys or []:
            key = (key or '').strip()
            if key and key not in sanitized:
                sanitized.append(key)
        with self._lock:
            if sanitized == self._keys:
                return
            self._keys = sanitized
            self._index = 0
            self._backoff_until = {
                key: until for key, until in self._backoff_until.items() if key in sanitized
            }

    @property
    def keys(self) -> List[str]:
        with self._lock:
            return list(self._keys)

    def has_keys(self) -> bool:
        with self._lock:
            return bool(self._keys)

    def _is_backed_off(self, key: str, now: float) -> bool:
        until = self._backoff_until.get(key)
        if until is None:
            return False
        if until <= now:
            del self._backoff_until[key]
            return False
        return True

    def next(self) -> Optional[str]:
        with self._lock:
            if not self._keys:
                return None
            now = self._clock()
            for _ in range(len(self._keys)):
                key = self._keys[self._index]
                self._index = (self._index + 1) % len(self._keys)
                if not self._is_backed_off(key, now):
                    return key
            return None

    def available_count(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(1 for key in self._keys if not self._is_backed_off(key, now))

    def mark_failed(self, key: str, reason: str = 'rate_limit', duration_seconds: float = None):
        """Install or extend a backoff window for a key"""
        if not key:
            return
        duration = duration_seconds if duration_seconds and duration_seconds > 0 else self.default_backoff_seconds
        with self._lock:
            until = self._clock() + duration
            current = self._backoff_until.get(key)
            if current is None or until > current:
                self._backoff_until[key] = until
        logger.warning(
            f"Backing off {self.provider} key {mask_key(key)} ({reason}) for {duration:.0f}s"
        )


class KeyPoolRegistry:
    """Independent key pools, one per provider"""

    def __init__(self, keys_by_provider: Dict[str, Iterable[str]] = None,
                 default_backoff_seconds: float = None, clock=time.time):
        self.default_backoff_seconds = default_backoff_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._pools: Dict[str, ApiKeyPool] = {}
        for provider, keys in (keys_by_provider or {}).items():
            self.pool_for(provider).set_keys(keys)

    def pool_for(self, provider: str) -> ApiKeyPool:
        with self._lock:
            pool = self._pools.get(provider)
            if pool is None:
                pool = ApiKeyPool(provider, default_backoff_seconds=self.default_backoff_seconds,
                                  clock=self._clock)
                self._pools[provider] = pool
            return pool

    def set_keys(self, provider: str, keys: Iterable[str]):
        self.pool_for(provider).set_keys(keys)

    def providers(self) -> List[str]:
        with self._lock:
            return list(self._pools.keys())
