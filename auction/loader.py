"""Сборка движка позиций из настроек.

Все компоненты создаются явно и принадлежат PositionEngine; глобальных
кешей нет, поэтому два движка (или два теста) не делят состояние.
"""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from auction.models import Clock, now_ts
from auction.services.core.error_handler import ErrorHandler, ProviderPool, RetryConfig
from auction.services.ledger.gateway import LedgerGateway
from auction.services.ledger.rpc_client import LedgerRPCClient
from auction.services.ledger.sync_service import SyncService
from auction.services.ledger.transaction_monitor import TransactionMonitor
from auction.services.positions.orchestrator import PositionOrchestrator
from auction.services.storage.backends import KeyValueStore, create_storage
from auction.services.storage.position_cache import PersistentPositionCache
from auction.services.storage.tiered_cache import TieredPositionCache
from auction.utils.performance import BatchLoader, Debouncer
from config.settings import AppSettings, get_settings


@dataclass(slots=True)
class PositionEngine:
    settings: AppSettings
    gateway: LedgerGateway
    storage: KeyValueStore
    error_handler: ErrorHandler
    cache: TieredPositionCache
    sync_service: SyncService
    monitor: TransactionMonitor
    orchestrator: PositionOrchestrator
    rpc_client: LedgerRPCClient | None = None

    async def dispose(self) -> None:
        """Останавливает всё в обратном порядке сборки."""

        self.orchestrator.dispose()
        await self.cache.dispose()
        if self.rpc_client is not None:
            await self.rpc_client.close()
        await self.storage.close()
        self.error_handler.clear_error_logs()
        logger.info("Движок позиций остановлен")


async def create_position_engine(
    settings: AppSettings | None = None,
    gateway: LedgerGateway | None = None,
    storage: KeyValueStore | None = None,
    clock: Clock = now_ts,
) -> PositionEngine:
    """Собирает движок. Без gateway поднимает LedgerRPCClient по настройкам."""

    settings = settings or get_settings()
    provider_pool = ProviderPool.from_settings(settings.ledger.providers)
    error_handler = ErrorHandler(
        provider_pool=provider_pool,
        retry_config=RetryConfig.from_settings(settings.retry),
        max_log_size=settings.retry.error_log_size,
    )

    rpc_client: LedgerRPCClient | None = None
    if gateway is None:
        rpc_client = LedgerRPCClient(provider_pool, settings.ledger)
        await rpc_client.start()
        gateway = rpc_client

    storage = storage or await create_storage(settings.cache)
    persistent = PersistentPositionCache(storage, settings=settings.cache, clock=clock)
    migrated = await persistent.migrate_from_v1()
    if migrated:
        logger.info("Кеш позиций перенесён из v1: {count}", count=migrated)
    cache = TieredPositionCache(persistent, settings=settings.cache, clock=clock)

    perf = settings.performance
    sync_service = SyncService(
        gateway,
        error_handler,
        batch_loader=BatchLoader(
            batch_size=perf.batch_size,
            max_concurrent_batches=perf.max_concurrent_batches,
            delay_between_batches=perf.delay_between_batches,
        ),
        settings=settings.sync,
        contract_address=settings.ledger.contract_address,
        clock=clock,
    )
    monitor = TransactionMonitor(gateway, error_handler, settings=settings.monitor, clock=clock)
    orchestrator = PositionOrchestrator(
        gateway,
        sync_service,
        cache,
        monitor,
        error_handler,
        debouncer=Debouncer(),
        trading=settings.trading,
        performance=perf,
        clock=clock,
    )
    logger.info(
        "Движок позиций собран (кеш: {backend}, RPC-узлов: {providers})",
        backend=settings.cache.backend,
        providers=len(provider_pool.providers),
    )
    return PositionEngine(
        settings=settings,
        gateway=gateway,
        storage=storage,
        error_handler=error_handler,
        cache=cache,
        sync_service=sync_service,
        monitor=monitor,
        orchestrator=orchestrator,
        rpc_client=rpc_client,
    )


__all__ = ["PositionEngine", "create_position_engine"]
