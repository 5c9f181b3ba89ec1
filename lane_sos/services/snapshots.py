"""Durable incident snapshots.

The incident store writes every committed record here so a restarted
process can rebuild its state and re-arm escalation for open incidents.
Snapshots live in one Redis hash (``<namespace>emergencies``), one field per
emergency id, holding the record's JSON.  When Redis is unreachable the
store keeps snapshots in process memory instead; the engine keeps running,
but recovery after a restart then has nothing to load.
"""

from __future__ import annotations

from typing import Any, Protocol, runtime_checkable

import orjson
import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)


@runtime_checkable
class SnapshotBackend(Protocol):
    async def write(self, emergency_id: str, blob: bytes) -> None: ...

    async def read_all(self) -> dict[str, bytes]: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class RedisSnapshotBackend:
    """One Redis hash holding every snapshot."""

    __slots__ = ("_client", "_hash_key")

    def __init__(self, url: str, hash_key: str, *, max_connections: int = 10) -> None:
        self._client = aioredis.from_url(
            url,
            max_connections=max_connections,
            decode_responses=False,
        )
        self._hash_key = hash_key

    async def write(self, emergency_id: str, blob: bytes) -> None:
        await self._client.hset(self._hash_key, emergency_id, blob)

    async def read_all(self) -> dict[str, bytes]:
        raw = await self._client.hgetall(self._hash_key)
        return {
            (field.decode() if isinstance(field, bytes) else field): blob
            for field, blob in raw.items()
        }

    async def reachable(self) -> bool:
        try:
            return bool(await self._client.ping())
        except (RedisError, OSError):
            return False

    async def close(self) -> None:
        await self._client.aclose()


class MemorySnapshotBackend:
    """Process-local fallback.  Unbounded: snapshots are never evicted."""

    __slots__ = ("_blobs",)

    def __init__(self) -> None:
        self._blobs: dict[str, bytes] = {}

    async def write(self, emergency_id: str, blob: bytes) -> None:
        self._blobs[emergency_id] = blob

    async def read_all(self) -> dict[str, bytes]:
        return dict(self._blobs)

    def __len__(self) -> int:
        return len(self._blobs)


# ---------------------------------------------------------------------------
# Public store
# ---------------------------------------------------------------------------


class SnapshotStore:
    """JSON snapshots keyed by emergency id, Redis first.

    Redis is probed on first use.  If the probe fails, or any later Redis
    call raises, the store switches to the in-memory backend for the rest
    of the process lifetime.

    Parameters
    ----------
    redis_url:
        Redis connection string.  ``None`` keeps snapshots in memory only.
    namespace:
        Prefix of the Redis hash key, e.g. ``"lane-sos:"``.
    """

    __slots__ = ("_memory", "_probed", "_redis", "_redis_ok")

    def __init__(self, *, redis_url: str | None = None, namespace: str = "") -> None:
        self._memory = MemorySnapshotBackend()
        self._redis: RedisSnapshotBackend | None = None
        self._redis_ok = False
        self._probed = False

        if redis_url:
            try:
                self._redis = RedisSnapshotBackend(redis_url, f"{namespace}emergencies")
            except ValueError:
                logger.warning("snapshots.redis_url_invalid", redis_url=redis_url)

    @property
    def using_redis(self) -> bool:
        return self._redis_ok

    async def _active(self) -> SnapshotBackend:
        if self._redis is not None and not self._probed:
            self._probed = True
            self._redis_ok = await self._redis.reachable()
            if self._redis_ok:
                logger.info("snapshots.redis_connected")
            else:
                logger.warning("snapshots.redis_unreachable_using_memory")
        if self._redis_ok and self._redis is not None:
            return self._redis
        return self._memory

    async def _call(self, method: str, *args: Any) -> Any:
        backend = await self._active()
        try:
            return await getattr(backend, method)(*args)
        except (RedisError, OSError):
            if backend is self._memory:
                raise
            logger.warning("snapshots.redis_failed", method=method, exc_info=True)
            self._redis_ok = False
            return await getattr(self._memory, method)(*args)

    async def save(self, emergency_id: str, payload: dict[str, Any]) -> None:
        await self._call("write", emergency_id, orjson.dumps(payload))

    async def load_all(self) -> dict[str, dict[str, Any]]:
        """Every stored snapshot, decoded.  Undecodable entries are skipped."""
        decoded: dict[str, dict[str, Any]] = {}
        for emergency_id, blob in (await self._call("read_all")).items():
            try:
                decoded[emergency_id] = orjson.loads(blob)
            except orjson.JSONDecodeError:
                logger.warning("snapshots.undecodable", emergency_id=emergency_id)
        return decoded

    async def close(self) -> None:
        if self._redis is not None:
            try:
                await self._redis.close()
            except (RedisError, OSError):
                logger.debug("snapshots.close_failed", exc_info=True)
