"""Оркестратор позиций: то, что видит UI.

Собирает синхронизацию, кеш, мониторинг транзакций и обработку ошибок в
одну точку с состоянием `positions / loading / error / transaction_status`.
Позиции меняются только по данным леджера: покупка и продажа лишь
отправляют транзакцию и после подтверждения запускают обновление.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

from loguru import logger

from auction.exceptions import TradeRejected, TransactionFailed
from auction.models import (
    Clock,
    ErrorContext,
    Position,
    PositionStatus,
    TransactionStatus,
    TransactionType,
    now_ts,
    utc_day,
)
from auction.services.core.error_handler import ErrorHandler
from auction.services.ledger.gateway import LedgerGateway
from auction.services.ledger.sync_service import SyncService
from auction.services.ledger.transaction_monitor import TransactionMonitor
from auction.services.positions.operation import OperationState, TradeOperation
from auction.services.storage.tiered_cache import TieredPositionCache
from auction.utils.performance import Debouncer
from auction.utils.validation import validate_and_filter_positions
from config.settings import PerformanceSettings, TradingSettings, get_settings


@dataclass(slots=True, frozen=True)
class TransactionStatusView:
    hash: str
    status: TransactionStatus
    type: TransactionType
    user_message: str | None = None


@dataclass(slots=True, frozen=True)
class PositionsSnapshot:
    owner: str | None
    positions: tuple[Position, ...]
    active_positions: tuple[Position, ...]
    loading: bool
    error: str | None
    transaction_status: TransactionStatusView | None


Listener = Callable[[PositionsSnapshot], None]

SUCCESS_MESSAGES = {
    TransactionType.BUY: "Transaction confirmed successfully!",
    TransactionType.SELL: "Position sold successfully!",
}


class PositionOrchestrator:
    def __init__(
        self,
        gateway: LedgerGateway,
        sync_service: SyncService,
        cache: TieredPositionCache,
        monitor: TransactionMonitor,
        error_handler: ErrorHandler,
        debouncer: Debouncer | None = None,
        trading: TradingSettings | None = None,
        performance: PerformanceSettings | None = None,
        clock: Clock = now_ts,
    ) -> None:
        settings = get_settings()
        self.gateway = gateway
        self.sync_service = sync_service
        self.cache = cache
        self.monitor = monitor
        self.error_handler = error_handler
        self.debouncer = debouncer or Debouncer()
        self.trading = trading or settings.trading
        self.refresh_delay = (performance or settings.performance).refresh_debounce_sec
        self._clock = clock

        self.positions: list[Position] = []
        self.loading = False
        self.error: str | None = None
        self.transaction_status: TransactionStatusView | None = None
        self.operation: TradeOperation | None = None

        self._owner: str | None = None
        self._listeners: list[Listener] = []
        self._inflight: dict[str, asyncio.Task[list[Position]]] = {}
        self._daily: dict[tuple[TransactionType, str], tuple[str, int]] = {}
        self._timers: set[asyncio.TimerHandle] = set()
        self._disposed = False

    # ------------------------------------------------------------------
    # состояние для UI

    @property
    def owner(self) -> str | None:
        return self._owner

    @property
    def active_positions(self) -> list[Position]:
        return [item for item in self.positions if not item.closed]

    def snapshot(self) -> PositionsSnapshot:
        return PositionsSnapshot(
            owner=self._owner,
            positions=tuple(self.positions),
            active_positions=tuple(self.active_positions),
            loading=self.loading,
            error=self.error,
            transaction_status=self.transaction_status,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Подписка на изменения состояния. Возвращает функцию отписки."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if self._disposed:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as exc:  # noqa: BLE001
                logger.error("Слушатель состояния позиций упал: {error}", error=exc)

    def _is_active(self, owner: str) -> bool:
        return (
            not self._disposed
            and self._owner is not None
            and self._owner.lower() == owner.lower()
        )

    # ------------------------------------------------------------------
    # смена аккаунта

    async def set_owner(self, owner: str | None) -> None:
        """Переключает активный аккаунт. None означает отключение кошелька."""

        if owner is not None and self._owner is not None and owner.lower() == self._owner.lower():
            return
        previous = self._owner
        if previous is not None:
            self.sync_service.cleanup()
            self.debouncer.cancel(self._refresh_key(previous))
        self._owner = owner
        self.positions = []
        self.error = None
        if owner is None:
            logger.info("Аккаунт отключён")
            self._notify()
            return

        await self.cache.cleanup_old_data()
        cached = await self.cache.get(owner)
        if not self._is_active(owner):
            return
        if cached:
            self.positions = validate_and_filter_positions(cached, owner, self._clock())
            logger.info("Из кеша восстановлено {count} позиций {owner}", count=len(self.positions), owner=owner)

        self.sync_service.subscribe_to_position_events(owner, self._make_event_handler(owner))
        self.sync_service.start_periodic_sync(owner, self._make_sync_handler(owner))
        self._notify()

    def _make_event_handler(self, owner: str) -> Callable[[Position], Awaitable[None]]:
        async def on_position(position: Position) -> None:
            if not self._is_active(owner) or not position.is_owned_by(owner):
                return
            merged = [item for item in self.positions if item.id != position.id]
            merged.append(position)
            merged.sort(key=lambda item: item.id)
            await self._apply_positions(owner, merged)

        return on_position

    def _make_sync_handler(self, owner: str) -> Callable[[list[Position]], Awaitable[None]]:
        async def on_sync(positions: list[Position]) -> None:
            await self._apply_positions(owner, positions)

        return on_sync

    async def _apply_positions(self, owner: str, positions: list[Position]) -> bool:
        """Принимает новый список, только если owner всё ещё активен."""

        if not self._is_active(owner):
            logger.debug("Ответ для неактивного аккаунта {owner} отброшен", owner=owner)
            return False
        self.positions = positions
        self._notify()
        await self.cache.put(owner, positions)
        return True

    # ------------------------------------------------------------------
    # обновление

    @staticmethod
    def _refresh_key(owner: str) -> str:
        return f"refresh_{owner.lower()}"

    async def refresh_positions(self) -> list[Position]:
        """Дебаунс-обновление: серия вызовов даёт одну синхронизацию."""

        owner = self._owner
        if owner is None:
            return []
        return await self.debouncer.call(self._refresh_key(owner), self._refresh, self.refresh_delay, owner)

    async def _refresh(self, owner: str) -> list[Position]:
        # Одна синхронизация на владельца: параллельные вызовы ждут текущую.
        key = owner.lower()
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.create_task(self._do_refresh(owner), name=f"refresh-{key}")
            self._inflight[key] = task

            def forget(done: asyncio.Task[list[Position]]) -> None:
                if self._inflight.get(key) is done:
                    del self._inflight[key]

            task.add_done_callback(forget)
        return await asyncio.shield(task)

    async def _do_refresh(self, owner: str) -> list[Position]:
        context = ErrorContext(operation="refresh_positions", user_address=owner)
        self.loading = True
        self.error = None
        self._notify()
        try:
            positions = await self.sync_service.force_sync_and_update(owner)
        except Exception as exc:  # noqa: BLE001
            details = self.error_handler.classify(exc.__cause__ or exc, context)
            self.error_handler.log_error(details)
            if self._is_active(owner):
                self.error = details.user_message
            logger.warning("Обновление позиций {owner} не удалось: {error}", owner=owner, error=exc)
            return list(self.positions) if self._is_active(owner) else []
        finally:
            self.loading = False
            self._notify()
        await self._apply_positions(owner, positions)
        return positions

    # ------------------------------------------------------------------
    # торговля

    def get_position_by_id(self, position_id: int) -> Position | None:
        for position in self.positions:
            if position.id == position_id:
                return position
        return None

    def _require_owner(self) -> str:
        if self._owner is None:
            raise TradeRejected("no_owner", "Connect a wallet to trade")
        return self._owner

    def _check_daily_limit(self, tx_type: TransactionType, owner: str) -> None:
        limit = self.trading.daily_buy_limit if tx_type is TransactionType.BUY else self.trading.daily_sell_limit
        day, count = self._daily.get((tx_type, owner.lower()), ("", 0))
        if day == utc_day(self._clock()) and count >= limit:
            raise TradeRejected("daily_limit", f"Daily {tx_type.value} limit reached: {limit}")

    def _count_daily(self, tx_type: TransactionType, owner: str) -> None:
        today = utc_day(self._clock())
        key = (tx_type, owner.lower())
        day, count = self._daily.get(key, ("", 0))
        self._daily[key] = (today, count + 1 if day == today else 1)

    def to_base_units(self, usd_amount: Any) -> int:
        amount = Decimal(str(usd_amount))
        scale = Decimal(10) ** self.trading.usd_decimals
        return int((amount * scale).to_integral_value(rounding=ROUND_DOWN))

    async def buy(self, usd_amount: Any, meta: dict[str, Any] | None = None) -> str:
        owner = self._require_owner()
        try:
            amount = Decimal(str(usd_amount))
        except InvalidOperation:
            amount = Decimal("NaN")
        if not amount.is_finite() or amount < Decimal(str(self.trading.min_buy_usd)):
            raise TradeRejected("below_minimum", f"Minimum purchase is ${self.trading.min_buy_usd:g}")
        self._check_daily_limit(TransactionType.BUY, owner)
        units = self.to_base_units(amount)
        context = ErrorContext(
            operation="buy",
            user_address=owner,
            additional_data={"usd_amount": str(amount), "amount": units, **(meta or {})},
        )
        return await self._execute(
            TransactionType.BUY,
            owner,
            lambda: self.gateway.submit_buy(owner, units),
            context,
        )

    async def sell(self, position_id: int) -> str:
        owner = self._require_owner()
        position = self.get_position_by_id(position_id)
        if position is None:
            raise TradeRejected("not_found", f"Position {position_id} not found")
        if position.closed:
            raise TradeRejected("closed", f"Position {position_id} is already closed")
        status = position.with_fresh_status(self._clock()).status
        if status is PositionStatus.LOCKED:
            raise TradeRejected("locked", f"Position {position_id} is still locked")
        if status is not PositionStatus.READY:
            raise TradeRejected("not_ready", f"Position {position_id} is not ready to sell")
        self._check_daily_limit(TransactionType.SELL, owner)
        chain_id = position.on_chain_id if position.on_chain_id is not None else position.id
        context = ErrorContext(
            operation="sell",
            user_address=owner,
            additional_data={"position_id": position_id},
        )
        return await self._execute(
            TransactionType.SELL,
            owner,
            lambda: self.gateway.submit_sell(owner, chain_id),
            context,
        )

    async def _execute(
        self,
        tx_type: TransactionType,
        owner: str,
        submit: Callable[[], Awaitable[str]],
        context: ErrorContext,
    ) -> str:
        operation = TradeOperation(type=tx_type, owner=owner)
        self.operation = operation
        operation.submitting()
        self.loading = True
        self.error = None
        self._notify()
        try:
            try:
                tx_hash = await self.error_handler.retry_operation(submit, context)
            except Exception as exc:
                details = self.error_handler.classify(exc, context)
                operation.failed(details.user_message)
                self._set_status(operation, "", TransactionStatus.FAILED, details.user_message)
                raise

            self._count_daily(tx_type, owner)
            operation.pending(tx_hash)
            self._set_status(operation, tx_hash, TransactionStatus.PENDING, None)

            try:
                result = await self.monitor.monitor(tx_hash, tx_type)
            except Exception as exc:
                operation.failed(str(exc))
                raise

            if result.status is TransactionStatus.CONFIRMED:
                operation.confirmed()
                self._set_status(operation, tx_hash, TransactionStatus.CONFIRMED, SUCCESS_MESSAGES[tx_type])
                self.loading = False
                await self._refresh(owner)
                return tx_hash

            message = result.user_message or result.error or "Transaction failed"
            operation.failed(message)
            self._set_status(operation, tx_hash, TransactionStatus.FAILED, message)
            raise TransactionFailed(result)
        finally:
            self.loading = False
            self._notify()

    def _set_status(
        self,
        operation: TradeOperation,
        tx_hash: str,
        status: TransactionStatus,
        message: str | None,
    ) -> None:
        if self.operation is not operation or self._disposed:
            return
        self.transaction_status = TransactionStatusView(
            hash=tx_hash, status=status, type=operation.type, user_message=message
        )
        if status is TransactionStatus.FAILED:
            self.error = message
            self._schedule_reset(operation, self.trading.failed_status_reset_delay_sec)
        elif status is TransactionStatus.CONFIRMED:
            self._schedule_reset(operation, self.trading.status_reset_delay_sec)
        self._notify()

    def _schedule_reset(self, operation: TradeOperation, delay: float) -> None:
        loop = asyncio.get_running_loop()
        handle: asyncio.TimerHandle | None = None

        def reset() -> None:
            self._timers.discard(handle)
            if self.operation is not operation or self._disposed:
                return
            if operation.state.is_terminal:
                operation.reset()
            self.operation = None
            self.transaction_status = None
            self._notify()

        handle = loop.call_later(delay, reset)
        self._timers.add(handle)

    @property
    def operation_state(self) -> OperationState:
        return self.operation.state if self.operation else OperationState.IDLE

    # ------------------------------------------------------------------

    def dispose(self) -> None:
        """Гасит таймеры, поллинг и мониторы. Запросы в полёте доживают, но результат отбрасывается."""

        self._disposed = True
        for handle in list(self._timers):
            handle.cancel()
        self._timers.clear()
        self.debouncer.cleanup()
        self.sync_service.cleanup()
        self.monitor.cleanup()
        self._listeners.clear()
        self._owner = None
        logger.info("Оркестратор позиций остановлен")


__all__ = ["PositionOrchestrator", "PositionsSnapshot", "TransactionStatusView"]
