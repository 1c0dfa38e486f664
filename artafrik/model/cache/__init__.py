# model/cache/__init__.py
import time
from typing import Callable, Optional
import redis.asyncio as redis

from ._memory import MemoryCache
from ._redis import RedisCache


# Factory keeps server.py simple and backend-agnostic:
def new_cache(*, backend: str = "memory",
              r: Optional[redis.Redis] = None,
              clock: Optional[Callable[[], float]] = None,
              namespace: str = "artafrik"):
    if backend == "redis":
        if r is None:
            raise RuntimeError("RedisCache requires r=redis.Redis")
        return RedisCache(r=r, namespace=namespace)
    return MemoryCache(clock=clock or time.time)


__all__ = ["MemoryCache", "RedisCache", "new_cache"]
