"""Оркестратор: смена аккаунта, обновление, покупка и продажа."""

import asyncio
from dataclasses import replace

import pytest
from conftest import HOUR, OTHER, OWNER, TX_HASH, FakeClock, FakeLedgerGateway, SleepRecorder, make_position

from auction.exceptions import TradeRejected, TransactionFailed
from auction.models import TransactionStatus
from auction.services.core.error_handler import ErrorHandler, ProviderPool
from auction.services.ledger.gateway import EventKind
from auction.services.ledger.sync_service import SyncService
from auction.services.ledger.transaction_monitor import TransactionMonitor
from auction.services.positions.operation import OperationState
from auction.services.positions.orchestrator import PositionOrchestrator
from auction.services.storage.backends import MemoryStorage
from auction.services.storage.position_cache import PersistentPositionCache
from auction.services.storage.tiered_cache import TieredPositionCache
from auction.utils.performance import BatchLoader
from config.settings import CacheSettings, MonitorSettings, PerformanceSettings, SyncSettings, TradingSettings


@pytest.fixture
async def cache(clock: FakeClock):
    settings = CacheSettings(kdf_iterations=1000, backend="memory")
    tiered = TieredPositionCache(PersistentPositionCache(MemoryStorage(), settings, clock=clock), settings, clock=clock)
    yield tiered
    await tiered.dispose()


@pytest.fixture
def trading() -> TradingSettings:
    return TradingSettings()


@pytest.fixture
def orchestrator(
    gateway: FakeLedgerGateway,
    error_handler: ErrorHandler,
    cache: TieredPositionCache,
    clock: FakeClock,
    sleep: SleepRecorder,
    trading: TradingSettings,
):
    sync_service = SyncService(
        gateway,
        error_handler,
        batch_loader=BatchLoader(batch_size=10, max_concurrent_batches=1, delay_between_batches=0),
        settings=SyncSettings(poll_interval_sec=3600),
        contract_address="0x" + "c" * 40,
        clock=clock,
    )
    monitor = TransactionMonitor(
        gateway,
        error_handler,
        settings=MonitorSettings(check_interval_sec=1, max_retries=3),
        clock=clock,
        sleep=sleep,
    )
    orchestrator = PositionOrchestrator(
        gateway,
        sync_service,
        cache,
        monitor,
        error_handler,
        trading=trading,
        performance=PerformanceSettings(refresh_debounce_sec=0.01),
        clock=clock,
    )
    yield orchestrator
    orchestrator.dispose()


class TestAccount:
    async def test_set_owner_restores_cached_positions(
        self, orchestrator: PositionOrchestrator, cache: TieredPositionCache
    ) -> None:
        await cache.put(OWNER, [make_position(id=5, on_chain_id=5)])
        snapshots = []
        orchestrator.subscribe(snapshots.append)

        await orchestrator.set_owner(OWNER)

        assert [item.id for item in orchestrator.positions] == [5]
        assert snapshots[-1].owner == OWNER
        assert [item.id for item in snapshots[-1].active_positions] == [5]

    async def test_disconnect_clears_state(self, orchestrator: PositionOrchestrator, cache: TieredPositionCache) -> None:
        await cache.put(OWNER, [make_position()])
        await orchestrator.set_owner(OWNER)

        await orchestrator.set_owner(None)

        assert orchestrator.owner is None
        assert orchestrator.positions == []
        assert await orchestrator.refresh_positions() == []

    async def test_stale_owner_response_is_discarded(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, cache: TieredPositionCache
    ) -> None:
        started = asyncio.Event()
        release = asyncio.Event()
        real_length = gateway.get_positions_length

        async def slow_length() -> int:
            started.set()
            await release.wait()
            return await real_length()

        gateway.get_positions_length = slow_length
        await orchestrator.set_owner(OWNER)
        refresh = asyncio.create_task(orchestrator.refresh_positions())
        await started.wait()

        await orchestrator.set_owner(OTHER)
        release.set()
        await refresh

        assert orchestrator.owner == OTHER
        assert orchestrator.positions == []
        assert await cache.get(OWNER) is None

    async def test_unsubscribed_listener_is_not_called(self, orchestrator: PositionOrchestrator) -> None:
        calls = []
        unsubscribe = orchestrator.subscribe(calls.append)
        unsubscribe()

        await orchestrator.set_owner(OWNER)

        assert calls == []


class TestRefresh:
    async def test_refresh_loads_and_caches(
        self, orchestrator: PositionOrchestrator, cache: TieredPositionCache
    ) -> None:
        await orchestrator.set_owner(OWNER)

        positions = await orchestrator.refresh_positions()

        assert [item.id for item in positions] == [0, 2]
        assert [item.id for item in orchestrator.positions] == [0, 2]
        assert [item.id for item in await cache.get(OWNER)] == [0, 2]
        assert orchestrator.loading is False

    async def test_burst_collapses_into_one_sync(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway
    ) -> None:
        await orchestrator.set_owner(OWNER)

        results = await asyncio.gather(*(orchestrator.refresh_positions() for _ in range(5)))

        assert gateway.length_calls == 1
        assert all([item.id for item in result] == [0, 2] for result in results)

    async def test_failure_keeps_stale_positions(
        self,
        orchestrator: PositionOrchestrator,
        gateway: FakeLedgerGateway,
        cache: TieredPositionCache,
        provider_pool: ProviderPool,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        switches = []
        real_switch = provider_pool.switch_provider
        monkeypatch.setattr(provider_pool, "switch_provider", lambda: switches.append(1) or real_switch())
        await cache.put(OWNER, [make_position(id=5, on_chain_id=5)])
        await orchestrator.set_owner(OWNER)
        gateway.length_error = ConnectionError("network down")

        positions = await orchestrator.refresh_positions()

        assert [item.id for item in positions] == [5]
        assert [item.id for item in orchestrator.positions] == [5]
        assert "network connection issue" in orchestrator.error.lower()
        assert orchestrator.loading is False
        # только переключения внутри ретраев, без лишнего после них
        assert len(switches) == 3

    async def test_all_record_fetches_failing_keeps_stale_positions(
        self,
        orchestrator: PositionOrchestrator,
        gateway: FakeLedgerGateway,
        cache: TieredPositionCache,
    ) -> None:
        await cache.put(OWNER, [make_position(id=5, on_chain_id=5)])
        await orchestrator.set_owner(OWNER)
        for index in range(len(gateway.records)):
            gateway.record_errors[index] = ConnectionError("network down")

        positions = await orchestrator.refresh_positions()

        assert [item.id for item in positions] == [5]
        assert [item.id for item in orchestrator.positions] == [5]
        assert [item.id for item in await cache.get(OWNER)] == [5]
        assert "network connection issue" in orchestrator.error.lower()

    async def test_event_merges_position(self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway) -> None:
        await orchestrator.set_owner(OWNER)

        await gateway.emit(EventKind.CREATED, OWNER, 2)

        assert [item.id for item in orchestrator.positions] == [2]


class TestBuy:
    async def test_requires_owner(self, orchestrator: PositionOrchestrator) -> None:
        with pytest.raises(TradeRejected) as exc_info:
            await orchestrator.buy(50)
        assert exc_info.value.reason == "no_owner"

    @pytest.mark.parametrize("amount", [10, 19.99, "abc", float("nan"), -5])
    async def test_below_minimum_is_rejected_locally(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, amount
    ) -> None:
        await orchestrator.set_owner(OWNER)

        with pytest.raises(TradeRejected) as exc_info:
            await orchestrator.buy(amount)

        assert exc_info.value.reason == "below_minimum"
        assert gateway.submitted == []

    async def test_confirmed_buy_refreshes_positions(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, cache: TieredPositionCache
    ) -> None:
        await orchestrator.set_owner(OWNER)
        gateway.confirm()

        tx_hash = await orchestrator.buy(25.5)

        assert tx_hash == TX_HASH
        assert gateway.submitted == [("buy", OWNER, 25_500_000)]
        assert orchestrator.transaction_status.status is TransactionStatus.CONFIRMED
        assert orchestrator.transaction_status.user_message == "Transaction confirmed successfully!"
        assert orchestrator.operation_state is OperationState.CONFIRMED
        assert [item.id for item in orchestrator.positions] == [0, 2]
        assert [item.id for item in await cache.get(OWNER)] == [0, 2]
        assert orchestrator.loading is False

    async def test_daily_limit_resets_next_day(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, clock: FakeClock
    ) -> None:
        await orchestrator.set_owner(OWNER)
        gateway.confirm()
        await orchestrator.buy(20)
        await orchestrator.buy(20)

        with pytest.raises(TradeRejected) as exc_info:
            await orchestrator.buy(20)
        assert exc_info.value.reason == "daily_limit"
        assert len(gateway.submitted) == 2

        clock.advance(24 * HOUR)
        await orchestrator.buy(20)
        assert len(gateway.submitted) == 3

    async def test_reverted_buy_leaves_cache_untouched(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, cache: TieredPositionCache
    ) -> None:
        await orchestrator.set_owner(OWNER)
        gateway.confirm(status=0)

        with pytest.raises(TransactionFailed) as exc_info:
            await orchestrator.buy(30)

        assert exc_info.value.result.status is TransactionStatus.FAILED
        assert orchestrator.transaction_status.status is TransactionStatus.FAILED
        assert orchestrator.error == "Transaction reverted"
        assert orchestrator.operation_state is OperationState.FAILED
        assert orchestrator.positions == []
        assert await cache.get(OWNER) is None

    async def test_rejected_submission_is_not_counted(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway
    ) -> None:
        await orchestrator.set_owner(OWNER)
        gateway.submit_error = RuntimeError("user rejected transaction")

        with pytest.raises(RuntimeError):
            await orchestrator.buy(20)

        assert orchestrator.transaction_status.status is TransactionStatus.FAILED
        assert orchestrator.error == "Transaction was cancelled by user"

        gateway.submit_error = None
        gateway.confirm()
        await orchestrator.buy(20)
        await orchestrator.buy(20)
        assert len(gateway.submitted) == 2


class TestSell:
    async def test_sell_checks_run_before_submission(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway
    ) -> None:
        await orchestrator.set_owner(OWNER)
        await orchestrator.refresh_positions()

        with pytest.raises(TradeRejected) as locked:
            await orchestrator.sell(2)
        with pytest.raises(TradeRejected) as missing:
            await orchestrator.sell(99)

        assert locked.value.reason == "locked"
        assert missing.value.reason == "not_found"
        assert gateway.submitted == []

    async def test_closed_position_is_rejected(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway
    ) -> None:
        gateway.records[0] = replace(gateway.records[0], closed=True)
        await orchestrator.set_owner(OWNER)
        await orchestrator.refresh_positions()

        with pytest.raises(TradeRejected) as exc_info:
            await orchestrator.sell(0)

        assert exc_info.value.reason == "closed"
        assert [item.id for item in orchestrator.active_positions] == [2]

    async def test_unlocked_position_can_be_sold(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway, clock: FakeClock
    ) -> None:
        await orchestrator.set_owner(OWNER)
        await orchestrator.refresh_positions()
        gateway.confirm()

        clock.advance(2 * HOUR)
        await orchestrator.sell(2)

        assert gateway.submitted == [("sell", OWNER, 2)]
        assert orchestrator.transaction_status.user_message == "Position sold successfully!"


class TestLifecycle:
    @pytest.fixture
    def trading(self) -> TradingSettings:
        return TradingSettings(status_reset_delay_sec=0.01)

    async def test_status_resets_after_delay(
        self, orchestrator: PositionOrchestrator, gateway: FakeLedgerGateway
    ) -> None:
        await orchestrator.set_owner(OWNER)
        gateway.confirm()
        await orchestrator.buy(20)
        assert orchestrator.transaction_status is not None

        await asyncio.sleep(0.05)

        assert orchestrator.transaction_status is None
        assert orchestrator.operation_state is OperationState.IDLE

    async def test_dispose_stops_everything(self, orchestrator: PositionOrchestrator) -> None:
        calls = []
        orchestrator.subscribe(calls.append)
        await orchestrator.set_owner(OWNER)
        calls.clear()

        orchestrator.dispose()

        assert orchestrator.owner is None
        assert orchestrator.sync_service._poll_task is None
        assert calls == []
