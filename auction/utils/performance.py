"""Примитивы производительности: батч-загрузка, debounce и TTL-кеш запросов.

Все объекты создаются явно и владеют своим состоянием; `cleanup()` гасит
таймеры и очищает память, поэтому между сессиями ничего не утекает.
"""

from __future__ import annotations

import asyncio
import itertools
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, Sequence, TypeVar

from aiocache import SimpleMemoryCache
from loguru import logger

from auction.models import Clock, now_ts
from config.settings import PerformanceSettings, get_settings

T = TypeVar("T")

_cache_instances = itertools.count(1)


@dataclass(slots=True)
class BatchPage(Generic[T]):
    """Одна страница ответа: элементы + указатель на следующую."""

    items: Sequence[T]
    has_more: bool
    next_offset: int | None = None
    total_count: int | None = None


PageFetcher = Callable[[int, int], Awaitable[BatchPage[T]]]


class BatchLoader:
    """Загружает большие выборки страницами, не перегружая RPC."""

    def __init__(
        self,
        batch_size: int | None = None,
        max_concurrent_batches: int | None = None,
        delay_between_batches: float | None = None,
        max_failed_batches: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        cfg = get_settings().performance
        self.max_failed_batches = max_failed_batches
        self.batch_size = batch_size or cfg.batch_size
        self.max_concurrent_batches = max_concurrent_batches or cfg.max_concurrent_batches
        self.delay_between_batches = (
            cfg.delay_between_batches if delay_between_batches is None else delay_between_batches
        )
        self._sleep = sleep

    async def load_in_batches(
        self,
        fetch_page: PageFetcher[T],
        total_count: int | None = None,
    ) -> list[T]:
        """Собирает все элементы. Упавший батч логируется и пропускается."""

        if total_count is not None:
            return await self._load_known_total(fetch_page, total_count)
        return await self._load_sequential(fetch_page)

    async def _load_sequential(self, fetch_page: PageFetcher[T]) -> list[T]:
        items: list[T] = []
        offset = 0
        has_more = True
        failures = 0
        while has_more:
            try:
                page = await fetch_page(offset, self.batch_size)
            except Exception as exc:  # noqa: BLE001
                logger.error("Батч с offset={offset} упал: {error}", offset=offset, error=exc)
                failures += 1
                if failures >= self.max_failed_batches:
                    # Без известного total иначе не понять, где конец выборки.
                    logger.warning(
                        "Подряд упало {count} батчей, загрузка остановлена на offset={offset}",
                        count=failures,
                        offset=offset,
                    )
                    break
                offset += self.batch_size
                if self.delay_between_batches > 0:
                    await self._sleep(self.delay_between_batches)
                continue
            failures = 0
            items.extend(page.items)
            has_more = page.has_more
            offset = page.next_offset if page.next_offset is not None else offset + self.batch_size
            if page.total_count is not None and len(items) >= page.total_count:
                has_more = False
            if has_more and self.delay_between_batches > 0:
                await self._sleep(self.delay_between_batches)
        return items

    async def _load_known_total(self, fetch_page: PageFetcher[T], total_count: int) -> list[T]:
        if total_count <= 0:
            return []
        offsets = range(0, total_count, self.batch_size)
        semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        async def run(index: int, offset: int) -> Sequence[T]:
            # Разносим старты батчей во времени, чтобы не бить узел залпом.
            if index and self.delay_between_batches > 0:
                await self._sleep(self.delay_between_batches * (index // self.max_concurrent_batches))
            async with semaphore:
                limit = min(self.batch_size, total_count - offset)
                try:
                    page = await fetch_page(offset, limit)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Батч с offset={offset} упал: {error}", offset=offset, error=exc)
                    return ()
                return page.items

        pages = await asyncio.gather(*(run(idx, offset) for idx, offset in enumerate(offsets)))
        items: list[T] = []
        for page_items in pages:
            items.extend(page_items)
        return items


@dataclass(slots=True)
class _DebounceSlot:
    future: asyncio.Future[Any]
    handle: asyncio.TimerHandle | None = None
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)


class Debouncer:
    """Схлопывает серию вызовов с одним ключом в один «хвостовой» вызов.

    Выполняется `fn` с аргументами последнего вызова, и все вызывающие
    получают один и тот же результат (или одно и то же исключение).
    """

    def __init__(self) -> None:
        self._slots: dict[str, _DebounceSlot] = {}
        self._tasks: set[asyncio.Task[Any]] = set()

    def debounce(
        self,
        key: str,
        fn: Callable[..., Awaitable[T]],
        delay: float,
    ) -> Callable[..., Awaitable[T]]:
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await self.call(key, fn, delay, *args, **kwargs)

        return wrapper

    async def call(
        self,
        key: str,
        fn: Callable[..., Awaitable[T]],
        delay: float,
        *args: Any,
        **kwargs: Any,
    ) -> T:
        loop = asyncio.get_running_loop()
        slot = self._slots.get(key)
        if slot is None:
            slot = _DebounceSlot(future=loop.create_future())
            self._slots[key] = slot
        elif slot.handle is not None:
            slot.handle.cancel()
        slot.args = args
        slot.kwargs = kwargs
        slot.handle = loop.call_later(delay, self._fire, key, fn)
        return await asyncio.shield(slot.future)

    def _fire(self, key: str, fn: Callable[..., Awaitable[Any]]) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        task = asyncio.ensure_future(self._run(slot, fn))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    @staticmethod
    async def _run(slot: _DebounceSlot, fn: Callable[..., Awaitable[Any]]) -> None:
        try:
            result = await fn(*slot.args, **slot.kwargs)
        except Exception as exc:  # noqa: BLE001
            if not slot.future.done():
                slot.future.set_exception(exc)
            return
        if not slot.future.done():
            slot.future.set_result(result)

    def pending(self, key: str) -> bool:
        return key in self._slots

    def cancel(self, key: str) -> None:
        slot = self._slots.pop(key, None)
        if slot is None:
            return
        if slot.handle is not None:
            slot.handle.cancel()
        if not slot.future.done():
            slot.future.cancel()

    def cleanup(self) -> None:
        for key in list(self._slots):
            self.cancel(key)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()


class RequestCache:
    """TTL-кеш результатов корутин на aiocache с вытеснением старейших 20%.

    Значения живут в SimpleMemoryCache со своим ttl; рядом хранится только
    индекс ключ -> (время записи, ttl) для вытеснения и статистики.
    Результат None не кешируется.
    """

    KEY_PREFIX = "perf_cache_"
    EVICTION_SHARE = 0.2

    def __init__(
        self,
        ttl: float | None = None,
        max_size: int | None = None,
        clock: Clock = now_ts,
    ) -> None:
        cfg: PerformanceSettings = get_settings().performance
        self.ttl = cfg.request_cache_ttl if ttl is None else ttl
        self.max_size = max_size or cfg.request_cache_max_size
        self._clock = clock
        self._namespace = f"{self.KEY_PREFIX}{next(_cache_instances)}:"
        self._memory = SimpleMemoryCache(namespace=self._namespace)
        self._index: dict[str, tuple[float, float]] = {}
        self._hits = 0
        self._misses = 0

    async def with_cache(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl: float | None = None,
    ) -> T:
        if self._is_fresh(key):
            value = await self._memory.get(key)
            if value is not None:
                self._hits += 1
                return value
        self._misses += 1
        try:
            result = await fn()
        except Exception:
            await self._forget(key)
            raise
        if result is None:
            return result
        if key not in self._index and len(self._index) >= self.max_size:
            await self._evict()
        entry_ttl = self.ttl if ttl is None else ttl
        await self._memory.set(key, result, ttl=entry_ttl)
        self._index[key] = (self._clock(), entry_ttl)
        return result

    async def should_use_cache(self, key: str) -> bool:
        return self._is_fresh(key) and await self._memory.exists(key)

    async def invalidate(self, pattern: str | None = None) -> None:
        if pattern is None:
            await self._memory.clear(namespace=self._namespace)
            self._index.clear()
            return
        for key in [key for key in self._index if pattern in key]:
            await self._forget(key)

    def get_stats(self) -> dict[str, Any]:
        now = self._clock()
        oldest = min((stored_at for stored_at, _ in self._index.values()), default=None)
        lookups = self._hits + self._misses
        return {
            "size": len(self._index),
            "max_size": self.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": self._hits / lookups if lookups else 0.0,
            "oldest_entry_age": None if oldest is None else now - oldest,
        }

    def __len__(self) -> int:
        return len(self._index)

    def _is_fresh(self, key: str) -> bool:
        entry = self._index.get(key)
        if entry is None:
            return False
        stored_at, entry_ttl = entry
        return self._clock() - stored_at < entry_ttl

    async def _forget(self, key: str) -> None:
        self._index.pop(key, None)
        await self._memory.delete(key)

    async def _evict(self) -> None:
        for key in [key for key in self._index if not self._is_fresh(key)]:
            await self._forget(key)
        if len(self._index) < self.max_size:
            return
        to_remove = max(1, math.floor(self.max_size * self.EVICTION_SHARE))
        oldest = sorted(self._index, key=lambda key: self._index[key][0])[:to_remove]
        for key in oldest:
            await self._forget(key)
        logger.debug("RequestCache вытеснил {count} старейших записей", count=len(oldest))

    async def cleanup(self) -> None:
        await self._memory.clear(namespace=self._namespace)
        await self._memory.close()
        self._index.clear()
        self._hits = 0
        self._misses = 0


__all__ = ["BatchLoader", "BatchPage", "Debouncer", "PageFetcher", "RequestCache"]
