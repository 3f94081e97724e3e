"""Классифицированные ошибки и их контекст."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .base import now_ts


class ErrorType(str, Enum):
    NETWORK = "network"
    USER_ACTION = "user_action"
    GAS = "gas"
    CONTRACT = "contract"
    UNKNOWN = "unknown"
    # Только для кеша: самовосстанавливаются и пользователю не показываются.
    CORRUPTED_DATA = "corrupted_data"
    VERSION_MISMATCH = "version_mismatch"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass(slots=True)
class ErrorContext:
    """Откуда пришла ошибка: операция, время, адрес (если известен)."""

    operation: str
    timestamp: float = field(default_factory=now_ts)
    user_address: str | None = None
    contract_address: str | None = None
    transaction_hash: str | None = None
    additional_data: dict[str, Any] = field(default_factory=dict)

    def with_data(self, **extra: Any) -> "ErrorContext":
        return replace(self, additional_data={**self.additional_data, **extra})


@dataclass(slots=True)
class ErrorDetails:
    type: ErrorType
    severity: ErrorSeverity
    message: str
    user_message: str
    should_retry: bool
    context: ErrorContext
    suggested_action: str | None = None
    retry_delay: float | None = None


__all__ = ["ErrorContext", "ErrorDetails", "ErrorSeverity", "ErrorType"]
