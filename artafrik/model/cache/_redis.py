# model/cache/_redis.py
from __future__ import annotations
from typing import Optional
import redis.asyncio as redis


class RedisCache:
    """Shares gateway credentials across workers. Expects a client built
    with decode_responses=True."""

    def __init__(self, r: redis.Redis, namespace: str = "artafrik") -> None:
        self.r = r
        self.namespace = namespace

    def _k(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> Optional[str]:
        return await self.r.get(self._k(key))

    async def set(self, key: str, value: str, ttl_seconds: float) -> None:
        await self.r.set(self._k(key), value,
                         px=max(1, int(ttl_seconds * 1000)))

    async def delete(self, key: str) -> None:
        await self.r.delete(self._k(key))
