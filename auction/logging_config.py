"""Настройка loguru для слоя синхронизации."""

from __future__ import annotations

import sys

from loguru import logger

from auction.models import ErrorSeverity

# Уровень loguru для классифицированных ошибок.
SEVERITY_LEVELS: dict[ErrorSeverity, str] = {
    ErrorSeverity.LOW: "INFO",
    ErrorSeverity.MEDIUM: "WARNING",
    ErrorSeverity.HIGH: "ERROR",
    ErrorSeverity.CRITICAL: "ERROR",
}


def setup_logging(json: bool = False, level: str = "DEBUG") -> None:
    logger.remove()
    fmt = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}"
    if json:
        fmt = (
            "{{\"time\":\"{time:YYYY-MM-DDTHH:mm:ss}\","
            "\"level\":\"{level}\","
            "\"message\":\"{message}\","
            "\"extra\":{extra}}}"
        )
    logger.add(
        sys.stdout,
        format=fmt,
        level=level,
        colorize=not json,
        backtrace=False,
        enqueue=True,
    )


def level_for_severity(severity: ErrorSeverity) -> str:
    return SEVERITY_LEVELS.get(severity, "INFO")


__all__ = ["SEVERITY_LEVELS", "level_for_severity", "setup_logging"]
