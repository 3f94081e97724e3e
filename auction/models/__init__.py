"""Модели слоя синхронизации позиций."""

from .base import Clock, now_ts, utc_day, utcnow  # noqa: F401
from .errors import ErrorContext, ErrorDetails, ErrorSeverity, ErrorType  # noqa: F401
from .position import (  # noqa: F401
    DIAMOND,
    GOLD,
    LEAGUES,
    League,
    Position,
    PositionStatus,
    SILVER,
    derive_status,
    league_by_index,
    league_by_name,
    league_for_price,
    position_from_dict,
    position_to_dict,
)
from .storage import StorageItem  # noqa: F401
from .transaction import (  # noqa: F401
    PendingTransaction,
    TransactionReceipt,
    TransactionResult,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "Clock",
    "DIAMOND",
    "ErrorContext",
    "ErrorDetails",
    "ErrorSeverity",
    "ErrorType",
    "GOLD",
    "LEAGUES",
    "League",
    "PendingTransaction",
    "Position",
    "PositionStatus",
    "SILVER",
    "StorageItem",
    "TransactionReceipt",
    "TransactionResult",
    "TransactionStatus",
    "TransactionType",
    "derive_status",
    "league_by_index",
    "league_by_name",
    "league_for_price",
    "now_ts",
    "position_from_dict",
    "position_to_dict",
    "utc_day",
    "utcnow",
]
