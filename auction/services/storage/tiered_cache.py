"""Двухуровневый кеш позиций: aiocache в памяти перед персистентным слоем."""

from __future__ import annotations

import itertools
from typing import Iterable

from aiocache import SimpleMemoryCache
from loguru import logger

from auction.models import Clock, Position, now_ts
from auction.services.storage.position_cache import PersistentPositionCache
from config.settings import CacheSettings, get_settings

_instances = itertools.count(1)


class TieredPositionCache:
    """get: память -> персистентный слой (с подъёмом в память)."""

    def __init__(
        self,
        persistent: PersistentPositionCache,
        settings: CacheSettings | None = None,
        clock: Clock = now_ts,
    ) -> None:
        cfg = settings or get_settings().cache
        self.persistent = persistent
        self.ttl = cfg.ttl_seconds
        # Своё пространство имён на экземпляр: два движка не видят чужие ключи.
        self._namespace = f"{cfg.memory_namespace}:{next(_instances)}:"
        self._memory = SimpleMemoryCache(namespace=self._namespace)
        self._clock = clock

    async def get(self, owner: str) -> list[Position] | None:
        key = owner.lower()
        cached = await self._memory.get(key)
        if cached is not None:
            now = self._clock()
            return [item.with_fresh_status(now) for item in cached]
        positions = await self.persistent.load(owner)
        if positions is not None:
            await self._memory.set(key, tuple(positions), ttl=self.ttl)
        return positions

    async def put(self, owner: str, positions: Iterable[Position]) -> bool:
        items = tuple(positions)
        await self._memory.set(owner.lower(), items, ttl=self.ttl)
        return await self.persistent.save(owner, items)

    async def invalidate(self, owner: str) -> None:
        await self._memory.delete(owner.lower())
        await self.persistent.clear(owner)

    async def cleanup_old_data(self) -> int:
        return await self.persistent.cleanup_old_data()

    async def dispose(self) -> None:
        await self._memory.clear(namespace=self._namespace)
        await self._memory.close()
        logger.debug("Память кеша {ns} освобождена", ns=self._namespace)


__all__ = ["TieredPositionCache"]
