"""Key/value хранилища персистентного слоя кеша.

`MemoryStorage` живёт только в процессе (тесты, эфемерные сессии),
`SQLStorage` пишет в таблицу `storage_items` через SQLModel + aiosqlite.
"""

from __future__ import annotations

from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, select
from sqlmodel.ext.asyncio.session import AsyncSession

from auction.models import StorageItem, utcnow
from config.settings import CacheSettings, get_settings


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self) -> list[str]: ...

    async def close(self) -> None: ...


class MemoryStorage:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def keys(self) -> list[str]:
        return list(self._data)

    async def close(self) -> None:
        return None


class SQLStorage:
    """Хранилище поверх таблицы `storage_items`."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: CacheSettings | None = None) -> "SQLStorage":
        cfg = settings or get_settings().cache
        engine = create_async_engine(cfg.storage_dsn, echo=cfg.echo, poolclass=NullPool)
        return cls(engine)

    async def init_storage(self) -> None:
        """Создаёт таблицы (аналог init_db, пока миграции не нужны)."""

        async with self._engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)

    async def get(self, key: str) -> str | None:
        async with self._session_maker() as session:
            item = await session.get(StorageItem, key)
            return item.value if item else None

    async def set(self, key: str, value: str) -> None:
        async with self._session_maker() as session:
            item = await session.get(StorageItem, key)
            if item is None:
                item = StorageItem(key=key, value=value)
            else:
                item.value = value
                item.updated_at = utcnow()
            session.add(item)
            await session.commit()

    async def delete(self, key: str) -> None:
        async with self._session_maker() as session:
            item = await session.get(StorageItem, key)
            if item is None:
                return
            await session.delete(item)
            await session.commit()

    async def keys(self) -> list[str]:
        async with self._session_maker() as session:
            result = await session.exec(select(StorageItem.key))
            return list(result.all())

    async def close(self) -> None:
        await self._engine.dispose()


async def create_storage(settings: CacheSettings | None = None) -> KeyValueStore:
    """Создаёт хранилище по `cache.backend` и готовит таблицы."""

    cfg = settings or get_settings().cache
    if cfg.backend == "memory":
        return MemoryStorage()
    storage = SQLStorage.from_settings(cfg)
    await storage.init_storage()
    return storage


__all__ = ["KeyValueStore", "MemoryStorage", "SQLStorage", "create_storage"]
