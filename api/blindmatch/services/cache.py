import json
import logging
import math
import threading
import time
from typing import Any, Callable

import redis

logger = logging.getLogger(__name__)

# INCR and the first-increment EXPIRE run as one script so concurrent senders
# can never observe a counter without a window.
INCR_WINDOW_LUA = """
local current = redis.call('INCR', KEYS[1])
if current == 1 then
    redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
local ttl = redis.call('TTL', KEYS[1])
return {current, ttl}
"""


class RedisCache:
    def __init__(self, url: str, client: redis.Redis | None = None) -> None:
        self._client = client or redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5,
            retry_on_timeout=True,
        )
        self._incr_window = self._client.register_script(INCR_WINDOW_LUA)

    def get_json(self, key: str) -> Any | None:
        raw = self._client.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("[cache] dropping undecodable value key=%s", key)
            self._client.delete(key)
            return None

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        self._client.setex(key, ttl_seconds, json.dumps(value, default=str))

    def incr_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        count, ttl = self._incr_window(keys=[key], args=[window_seconds])
        return int(count), max(0, int(ttl))

    def ping(self) -> bool:
        return bool(self._client.ping())

    def close(self) -> None:
        self._client.close()


class MemoryCache:
    """Process-local cache with the same contract as RedisCache."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._values: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live(self, key: str, now: float) -> tuple[Any, float] | None:
        entry = self._values.get(key)
        if entry is None:
            return None
        if entry[1] <= now:
            del self._values[key]
            return None
        return entry

    def get_json(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live(key, self._clock())
            return json.loads(entry[0]) if entry else None

    def set_json(self, key: str, value: Any, ttl_seconds: int) -> None:
        with self._lock:
            self._values[key] = (json.dumps(value, default=str), self._clock() + ttl_seconds)

    def incr_window(self, key: str, window_seconds: int) -> tuple[int, int]:
        with self._lock:
            now = self._clock()
            entry = self._live(key, now)
            if entry is None:
                self._values[key] = (1, now + window_seconds)
                return 1, window_seconds
            count = int(entry[0]) + 1
            self._values[key] = (count, entry[1])
            return count, max(0, math.ceil(entry[1] - now))

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        with self._lock:
            self._values.clear()
