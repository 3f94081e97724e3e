"""Общие хелперы времени для моделей и сервисов."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], float]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ts() -> float:
    """Текущее unix-время в секундах (часы по умолчанию для всех сервисов)."""

    return time.time()


def utc_day(timestamp: float) -> str:
    """Ключ суток UTC для дневных лимитов (YYYY-MM-DD)."""

    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


__all__ = ["Clock", "now_ts", "utc_day", "utcnow"]
