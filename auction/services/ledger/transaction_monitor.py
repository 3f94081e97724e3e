"""Отслеживание отправленных транзакций до терминального статуса."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from loguru import logger

from auction.exceptions import MonitoringCancelled
from auction.models import (
    Clock,
    ErrorContext,
    ErrorDetails,
    PendingTransaction,
    TransactionResult,
    TransactionStatus,
    TransactionType,
    now_ts,
)
from auction.services.core.error_handler import ErrorHandler
from auction.services.ledger.gateway import LedgerGateway
from config.settings import MonitorSettings, get_settings


@dataclass(slots=True)
class _Tracker:
    transaction: PendingTransaction
    future: asyncio.Future[TransactionResult]
    task: asyncio.Task[None] | None = None


class TransactionMonitor:
    """Поллит квитанцию раз в check_interval (первая проверка сразу)."""

    def __init__(
        self,
        gateway: LedgerGateway,
        error_handler: ErrorHandler,
        settings: MonitorSettings | None = None,
        clock: Clock = now_ts,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        cfg = settings or get_settings().monitor
        self.gateway = gateway
        self.error_handler = error_handler
        self.check_interval = cfg.check_interval_sec
        self.max_retries = cfg.max_retries
        self._clock = clock
        self._sleep = sleep
        self._transactions: dict[str, PendingTransaction] = {}
        self._trackers: dict[str, _Tracker] = {}

    async def monitor(self, tx_hash: str, tx_type: TransactionType) -> TransactionResult:
        """Ждёт confirmed/failed. Повторный вызов с тем же hash ждёт тот же результат."""

        tracker = self._trackers.get(tx_hash)
        if tracker is None:
            transaction = PendingTransaction(hash=tx_hash, type=tx_type, timestamp=self._clock())
            tracker = _Tracker(
                transaction=transaction,
                future=asyncio.get_running_loop().create_future(),
            )
            self._transactions[tx_hash] = transaction
            self._trackers[tx_hash] = tracker
            tracker.task = asyncio.create_task(self._poll(tracker), name=f"tx-monitor-{tx_hash[:10]}")
            logger.info("Мониторинг {type} транзакции {hash}", type=tx_type.value, hash=tx_hash)
        return await asyncio.shield(tracker.future)

    async def _poll(self, tracker: _Tracker) -> None:
        while True:
            result = await self._check(tracker.transaction)
            if result is not None:
                self._finish(tracker, result)
                return
            await self._sleep(self.check_interval)

    async def _check(self, transaction: PendingTransaction) -> TransactionResult | None:
        tx_hash = transaction.hash
        try:
            receipt = await self.gateway.get_transaction_receipt(tx_hash)
            if receipt is not None:
                if receipt.succeeded:
                    return TransactionResult(hash=tx_hash, status=TransactionStatus.CONFIRMED, receipt=receipt)
                return TransactionResult(
                    hash=tx_hash,
                    status=TransactionStatus.FAILED,
                    receipt=receipt,
                    error="Transaction reverted",
                )
            if await self.gateway.get_transaction(tx_hash) is None:
                return TransactionResult(
                    hash=tx_hash,
                    status=TransactionStatus.FAILED,
                    error="Transaction not found",
                )
            return None
        except Exception as exc:  # noqa: BLE001
            transaction.retry_count += 1
            details = await self.error_handler.handle_error(
                exc,
                ErrorContext(
                    operation="monitor_transaction",
                    transaction_hash=tx_hash,
                    additional_data={"retry_count": transaction.retry_count},
                ),
            )
            if not details.should_retry or transaction.retry_count >= self.max_retries:
                return TransactionResult(
                    hash=tx_hash,
                    status=TransactionStatus.FAILED,
                    error=details.message,
                    error_type=details.type.value,
                    user_message=details.user_message,
                )
            return None

    def _finish(self, tracker: _Tracker, result: TransactionResult) -> None:
        tracker.transaction.status = result.status
        self._trackers.pop(tracker.transaction.hash, None)
        if not tracker.future.done():
            tracker.future.set_result(result)
        logger.info(
            "Транзакция {hash}: {status}{error}",
            hash=result.hash,
            status=result.status.value,
            error=f" ({result.error})" if result.error else "",
        )

    def cancel_monitoring(self, tx_hash: str) -> None:
        tracker = self._trackers.pop(tx_hash, None)
        self._transactions.pop(tx_hash, None)
        if tracker is None:
            return
        if tracker.task is not None:
            tracker.task.cancel()
        if not tracker.future.done():
            tracker.future.set_exception(MonitoringCancelled(tx_hash))
            # Ждущих может не быть, помечаем исключение полученным.
            tracker.future.exception()
        logger.info("Мониторинг {hash} отменён", hash=tx_hash)

    def handle_transaction_error(self, error: Any) -> ErrorDetails:
        """Классификация ошибки отправки (до начала мониторинга)."""

        return self.error_handler.classify(error, ErrorContext(operation="submit_transaction"))

    def get_transaction_status(self, tx_hash: str) -> TransactionStatus | None:
        transaction = self._transactions.get(tx_hash)
        return transaction.status if transaction else None

    def get_pending_transactions(self) -> dict[str, PendingTransaction]:
        return dict(self._transactions)

    def clear_completed_transactions(self) -> int:
        completed = [tx_hash for tx_hash, tx in self._transactions.items() if tx.status.is_terminal]
        for tx_hash in completed:
            del self._transactions[tx_hash]
        return len(completed)

    def cleanup(self) -> None:
        for tx_hash in list(self._trackers):
            self.cancel_monitoring(tx_hash)
        self._transactions.clear()


__all__ = ["TransactionMonitor"]
