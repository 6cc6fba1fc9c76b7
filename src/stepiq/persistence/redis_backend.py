"""Redis backend implementing IDistributedLock."""

from __future__ import annotations

import redis

from stepiq.core.exceptions import LockError

# Delete only if the caller still owns the key.
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
else
    return 0
end
"""


class RedisDistributedLock:
    """SET NX PX lock with compare-and-delete release.

    A holder whose TTL expired cannot release a lock someone else has
    since acquired, because the stored token no longer matches.
    """

    def __init__(self, host: str = "localhost", port: int = 6379, db: int = 0) -> None:
        self._host = host
        self._port = port
        self._db = db
        self._client = redis.Redis(
            host=host, port=port, db=db, decode_responses=True,
        )

    def acquire(self, key: str, token: str, ttl_ms: int) -> bool:
        try:
            return bool(self._client.set(key, token, nx=True, px=ttl_ms))
        except Exception as exc:
            raise LockError(f"Redis SET NX failed for key={key!r}: {exc}") from exc

    def release(self, key: str, token: str) -> bool:
        try:
            return bool(self._client.eval(_RELEASE_SCRIPT, 1, key, token))
        except Exception as exc:
            raise LockError(f"Redis lock release failed for key={key!r}: {exc}") from exc

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except Exception:
            return False
