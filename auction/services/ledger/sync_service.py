"""Синхронизация позиций пользователя с леджером.

Контракт не умеет фильтровать по владельцу, поэтому сервис обходит всё
пространство индексов батчами и оставляет только записи нужного адреса.
Ошибка отдельной записи не валит синхронизацию: запись логируется и
пропускается. Если не получены все записи или их доля больше порога,
синхронизация считается неудавшейся. Такой сбой, как и ошибка чтения
общего количества, даёт SyncError, и вызывающий остаётся со старыми
(закешированными) данными.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Sequence

from loguru import logger

from auction.exceptions import InvalidPositionError, SyncError
from auction.models import Clock, ErrorContext, Position, now_ts
from auction.services.core.error_handler import ErrorHandler
from auction.services.ledger.gateway import EventKind, LedgerGateway, PositionEvent, Subscription
from auction.utils.performance import BatchLoader, BatchPage
from auction.utils.validation import validate_position, validation_errors
from config.settings import SyncSettings, get_settings

PositionCallback = Callable[[Position], Awaitable[None]]
PositionsCallback = Callable[[list[Position]], Awaitable[None]]

_DIFF_FIELDS = ("closed", "amount_tokens", "status", "unlock_at")


def positions_changed(old: Sequence[Position], new: Sequence[Position]) -> bool:
    """True, если набор позиций или их ключевые поля отличаются."""

    if len(old) != len(new):
        return True
    old_by_id = {item.id: item for item in old}
    new_by_id = {item.id: item for item in new}
    if old_by_id.keys() != new_by_id.keys():
        return True
    for position_id, current in new_by_id.items():
        previous = old_by_id[position_id]
        if any(getattr(previous, name) != getattr(current, name) for name in _DIFF_FIELDS):
            return True
    return False


class SyncService:
    def __init__(
        self,
        gateway: LedgerGateway,
        error_handler: ErrorHandler,
        batch_loader: BatchLoader | None = None,
        settings: SyncSettings | None = None,
        contract_address: str | None = None,
        clock: Clock = now_ts,
    ) -> None:
        cfg = settings or get_settings().sync
        self.gateway = gateway
        self.error_handler = error_handler
        self.batch_loader = batch_loader or BatchLoader()
        self.poll_interval = cfg.poll_interval_sec
        self.max_failed_ratio = cfg.max_failed_fetch_ratio
        self.contract_address = contract_address or get_settings().ledger.contract_address
        self._clock = clock
        self._subscriptions: list[Subscription] = []
        self._poll_task: asyncio.Task[None] | None = None
        self._last_sync: dict[str, list[Position]] = {}

    def _context(self, operation: str, owner: str | None = None, **extra) -> ErrorContext:
        return ErrorContext(
            operation=operation,
            user_address=owner,
            contract_address=self.contract_address,
            additional_data=extra,
        )

    async def sync_positions(self, owner: str) -> list[Position]:
        """Полная выборка позиций владельца из леджера."""

        try:
            total = await self.error_handler.retry_operation(
                self.gateway.get_positions_length,
                self._context("get_positions_length", owner),
            )
        except Exception as exc:
            raise SyncError(f"Не удалось получить количество позиций: {exc}") from exc

        now = self._clock()
        failed: list[Exception] = []

        async def fetch_page(offset: int, limit: int) -> BatchPage[Position]:
            found = []
            for index in range(offset, offset + limit):
                try:
                    position = await self._fetch_owned(index, owner, now)
                except Exception as exc:  # noqa: BLE001
                    logger.error("Позиция {index} не получена: {error}", index=index, error=exc)
                    failed.append(exc)
                    continue
                if position is not None:
                    found.append(position)
            return BatchPage(items=found, has_more=offset + limit < total, total_count=total)

        positions = await self.batch_loader.load_in_batches(fetch_page, total_count=total)
        if failed and (len(failed) == total or len(failed) / total > self.max_failed_ratio):
            raise SyncError(
                f"Не получено {len(failed)} из {total} позиций, результат неполный"
            ) from failed[-1]
        positions.sort(key=lambda item: item.id)
        logger.info(
            "Синхронизировано {count} позиций для {owner} (всего в контракте {total})",
            count=len(positions),
            owner=owner,
            total=total,
        )
        return positions

    async def _fetch_owned(self, index: int, owner: str, now: float) -> Position | None:
        raw = await self.error_handler.retry_operation(
            lambda: self.gateway.get_position(index),
            self._context("get_position", owner, index=index),
        )
        if raw.owner.lower() != owner.lower():
            return None
        position = raw.to_position(index, now)
        if not validate_position(position, now):
            return None
        return position

    async def get_position(self, position_id: int) -> Position:
        raw = await self.error_handler.retry_operation(
            lambda: self.gateway.get_position(position_id),
            self._context("get_position", index=position_id),
        )
        now = self._clock()
        position = raw.to_position(position_id, now)
        errors = validation_errors(position, now)
        if errors:
            raise InvalidPositionError(f"Позиция {position_id} невалидна: {'; '.join(errors)}")
        return position

    def subscribe_to_position_events(self, owner: str, callback: PositionCallback) -> None:
        """Подписка на создание и закрытие позиций владельца."""

        async def on_event(event: PositionEvent) -> None:
            try:
                position = await self.get_position(event.position_id)
                await callback(position)
            except Exception as exc:  # noqa: BLE001
                logger.error(
                    "Обработка события {kind} для позиции {id} упала: {error}",
                    kind=event.kind.value,
                    id=event.position_id,
                    error=exc,
                )

        for kind in (EventKind.CREATED, EventKind.CLOSED):
            self._subscriptions.append(self.gateway.subscribe(kind, owner, on_event))
        logger.info("Подписка на события позиций {owner}", owner=owner)

    def unsubscribe_from_events(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions.clear()

    def start_periodic_sync(self, owner: str, callback: PositionsCallback) -> None:
        self.stop_periodic_sync()
        self._poll_task = asyncio.create_task(
            self._poll_loop(owner, callback), name=f"position-sync-{owner.lower()}"
        )
        logger.info("Периодическая синхронизация {owner} запущена", owner=owner)

    def stop_periodic_sync(self) -> None:
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None
            logger.info("Периодическая синхронизация остановлена")

    async def _poll_loop(self, owner: str, callback: PositionsCallback) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            await self.poll_once(owner, callback)

    async def poll_once(self, owner: str, callback: PositionsCallback) -> bool:
        """Один тик поллинга. True, если изменения найдены и отданы в callback."""

        try:
            current = await self.sync_positions(owner)
        except Exception as exc:  # noqa: BLE001
            logger.error("Периодическая синхронизация упала: {error}", error=exc)
            return False
        previous = self._last_sync.get(owner.lower(), [])
        if not positions_changed(previous, current):
            logger.debug("Изменений в позициях {owner} нет", owner=owner)
            return False
        self._last_sync[owner.lower()] = current
        try:
            await callback(current)
        except Exception as exc:  # noqa: BLE001
            logger.error("Колбэк синхронизации упал: {error}", error=exc)
        return True

    async def force_sync_and_update(self, owner: str) -> list[Position]:
        positions = await self.sync_positions(owner)
        self._last_sync[owner.lower()] = positions
        return positions

    def cleanup(self) -> None:
        self.stop_periodic_sync()
        self.unsubscribe_from_events()
        self._last_sync.clear()


__all__ = ["SyncService", "positions_changed"]
