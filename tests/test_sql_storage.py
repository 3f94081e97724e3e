"""SQL-хранилище персистентного кеша."""

import pytest
from conftest import OWNER, FakeClock, make_position

from auction.services.storage.backends import MemoryStorage, SQLStorage, create_storage
from auction.services.storage.position_cache import PersistentPositionCache
from config.settings import CacheSettings


@pytest.fixture
def cache_settings(tmp_path) -> CacheSettings:
    return CacheSettings(
        backend="sqlite",
        storage_dsn=f"sqlite+aiosqlite:///{tmp_path / 'positions_cache.db'}",
        kdf_iterations=1000,
    )


@pytest.fixture
async def storage(cache_settings: CacheSettings):
    sql = await create_storage(cache_settings)
    yield sql
    await sql.close()


class TestSQLStorage:
    async def test_crud(self, storage: SQLStorage) -> None:
        assert isinstance(storage, SQLStorage)
        assert await storage.get("missing") is None

        await storage.set("a", "1")
        await storage.set("a", "2")
        await storage.set("b", "3")

        assert await storage.get("a") == "2"
        assert sorted(await storage.keys()) == ["a", "b"]

        await storage.delete("a")
        await storage.delete("a")
        assert await storage.keys() == ["b"]

    async def test_data_survives_reopen(self, cache_settings: CacheSettings, clock: FakeClock) -> None:
        first = await create_storage(cache_settings)
        await PersistentPositionCache(first, cache_settings, clock=clock).save(OWNER, [make_position()])
        await first.close()

        second = await create_storage(cache_settings)
        try:
            loaded = await PersistentPositionCache(second, cache_settings, clock=clock).load(OWNER)
        finally:
            await second.close()

        assert loaded == [make_position()]

    async def test_memory_backend(self) -> None:
        assert isinstance(await create_storage(CacheSettings(backend="memory")), MemoryStorage)

