"""Иерархия исключений слоя синхронизации."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from auction.models import TransactionResult


class AuctionError(RuntimeError):
    """Базовое исключение слоя позиций."""


class LedgerRPCError(AuctionError):
    """RPC леджера вернул ошибку (JSON-RPC error или HTTP >= 400)."""

    def __init__(self, message: str, code: Any = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class SyncError(AuctionError):
    """Полная синхронизация не удалась; закешированные позиции остаются."""


class InvalidPositionError(AuctionError):
    """Запись позиции из леджера не прошла валидацию."""


class CacheError(AuctionError):
    """Внутренняя ошибка кеша. Наружу не пробрасывается."""


class CacheCorruptedError(CacheError):
    pass


class CacheVersionMismatchError(CacheError):
    pass


class TradeRejected(AuctionError):
    """Локальная проверка отклонила операцию до отправки в леджер."""

    def __init__(self, reason: str, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class TransactionFailed(AuctionError):
    """Отслеживаемая транзакция перешла в failed."""

    def __init__(self, result: "TransactionResult") -> None:
        super().__init__(result.user_message or result.error or "Transaction failed")
        self.result = result


class MonitoringCancelled(AuctionError):
    """Мониторинг транзакции остановлен через cancel_monitoring."""

    def __init__(self, tx_hash: str) -> None:
        super().__init__(f"Мониторинг {tx_hash} отменён")
        self.tx_hash = tx_hash


class InvalidTransition(AuctionError):
    """Недопустимый переход машины состояний операции."""


__all__ = [
    "AuctionError",
    "CacheCorruptedError",
    "CacheError",
    "CacheVersionMismatchError",
    "InvalidPositionError",
    "InvalidTransition",
    "LedgerRPCError",
    "MonitoringCancelled",
    "SyncError",
    "TradeRejected",
    "TransactionFailed",
]
