"""Отслеживаемые транзакции покупки/продажи."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


@dataclass(slots=True)
class TransactionReceipt:
    """Квитанция леджера: status == 1 успех, 0 revert."""

    hash: str
    status: int
    block_number: int | None = None
    raw: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@dataclass(slots=True)
class PendingTransaction:
    hash: str
    type: TransactionType
    timestamp: float
    retry_count: int = 0
    status: TransactionStatus = TransactionStatus.PENDING


@dataclass(slots=True)
class TransactionResult:
    """Терминальный результат мониторинга."""

    hash: str
    status: TransactionStatus
    receipt: TransactionReceipt | None = None
    error: str | None = None
    error_type: str | None = None
    user_message: str | None = None


__all__ = [
    "PendingTransaction",
    "TransactionReceipt",
    "TransactionResult",
    "TransactionStatus",
    "TransactionType",
]
