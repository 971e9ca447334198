"""Redis キャッシュバックエンド"""

from __future__ import annotations

import redis.asyncio as redis

from .cache import CacheBackend

_DELETE_BATCH = 500


class RedisCacheBackend(CacheBackend):
    """redis.asyncio を使ったキャッシュバックエンド。

    例外はそのまま送出し、握りつぶしは FlagCache 側で行う。
    """

    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 1.0) -> RedisCacheBackend:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def get(self, key: str) -> str | None:
        value = await self._client.get(key)
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str, ttl: float | None = None) -> None:
        if ttl is None:
            await self._client.set(key, value)
        else:
            await self._client.setex(key, max(1, int(ttl)), value)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._client.delete(*keys))

    async def delete_pattern(self, pattern: str) -> int:
        # KEYS はブロッキングなので SCAN で走査する
        removed = 0
        batch: list[str] = []
        async for key in self._client.scan_iter(match=pattern, count=_DELETE_BATCH):
            batch.append(key)
            if len(batch) >= _DELETE_BATCH:
                removed += await self.delete(*batch)
                batch = []
        if batch:
            removed += await self.delete(*batch)
        return removed

    async def ping(self) -> None:
        await self._client.ping()

    async def close(self) -> None:
        await self._client.aclose()
