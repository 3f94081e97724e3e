"""Классификация ошибок, ретраи с backoff и переключение RPC-узлов.

Ошибки раскладываются по пяти видам (network, user_action, gas, contract,
unknown) по коду и тексту сообщения. Сетевые и неизвестные повторяются с
экспоненциальной задержкой, остальные сразу уходят пользователю. Каждая
итоговая ошибка попадает в ограниченный журнал, это единственный след
клиентских сбоев для отладки.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import aiohttp
from loguru import logger

from auction.logging_config import level_for_severity
from auction.models import ErrorContext, ErrorDetails, ErrorSeverity, ErrorType
from config.settings import RetrySettings, RpcProviderSettings, get_settings

T = TypeVar("T")

NETWORK_INDICATORS = (
    "network",
    "timeout",
    "connection",
    "fetch",
    "NETWORK_ERROR",
    "ECONNREFUSED",
    "ENOTFOUND",
    "ETIMEDOUT",
    "socket hang up",
)
USER_ACTION_INDICATORS = (
    "user rejected",
    "user denied",
    "cancelled",
    "ACTION_REJECTED",
    "transaction was rejected",
)
GAS_INDICATORS = (
    "insufficient funds",
    "gas required exceeds",
    "out of gas",
    "gas limit",
    "intrinsic gas too low",
    "INSUFFICIENT_FUNDS",
)
CONTRACT_INDICATORS = (
    "revert",
    "execution reverted",
    "contract",
    "CALL_EXCEPTION",
    "invalid opcode",
    "stack underflow",
)

NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ServerTimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    TimeoutError,
)


@dataclass(slots=True)
class RetryConfig:
    max_retries: int = 3
    base_delay: float = 1.0
    backoff_multiplier: float = 2.0
    max_delay: float = 10.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "RetryConfig":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            backoff_multiplier=settings.backoff_multiplier,
            max_delay=settings.max_delay,
        )

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * self.backoff_multiplier**attempt, self.max_delay)


@dataclass(slots=True)
class RpcProvider:
    url: str
    name: str
    priority: int = 0
    is_active: bool = True

    @classmethod
    def from_settings(cls, settings: RpcProviderSettings) -> "RpcProvider":
        return cls(
            url=str(settings.url),
            name=settings.name,
            priority=settings.priority,
            is_active=settings.is_active,
        )


class ProviderPool:
    """Упорядоченный по приоритету список RPC-узлов с круговым failover."""

    def __init__(self, providers: Iterable[RpcProvider] = ()) -> None:
        self._providers = sorted(providers, key=lambda p: p.priority, reverse=True)
        self._index = 0

    @classmethod
    def from_settings(cls, providers: Iterable[RpcProviderSettings]) -> "ProviderPool":
        return cls(RpcProvider.from_settings(item) for item in providers)

    @property
    def providers(self) -> list[RpcProvider]:
        return list(self._providers)

    @property
    def current(self) -> RpcProvider | None:
        if not self._providers:
            return None
        return self._providers[self._index]

    def switch_provider(self) -> RpcProvider | None:
        """Гасит текущий узел и переходит к следующему активному (по кругу)."""

        if len(self._providers) <= 1:
            return self.current
        self._providers[self._index].is_active = False
        start = self._index
        while True:
            self._index = (self._index + 1) % len(self._providers)
            if self._providers[self._index].is_active or self._index == start:
                break
        current = self._providers[self._index]
        logger.warning("Переключились на RPC-узел {name} ({url})", name=current.name, url=current.url)
        return current

    def reset(self) -> None:
        for provider in self._providers:
            provider.is_active = True
        self._index = 0


class ErrorLog:
    """Кольцевой буфер классифицированных ошибок (старейшие вытесняются)."""

    def __init__(self, max_size: int = 1000) -> None:
        self._entries: deque[ErrorDetails] = deque(maxlen=max_size)

    @property
    def max_size(self) -> int:
        return self._entries.maxlen or 0

    def append(self, details: ErrorDetails) -> None:
        self._entries.append(details)

    def query(
        self,
        type: ErrorType | None = None,
        severity: ErrorSeverity | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[ErrorDetails]:
        logs = list(self._entries)
        if type is not None:
            logs = [item for item in logs if item.type is type]
        if severity is not None:
            logs = [item for item in logs if item.severity is severity]
        if since is not None:
            logs = [item for item in logs if item.context.timestamp >= since]
        if limit:
            logs = logs[-limit:]
        return logs

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def extract_error_message(error: Any) -> str:
    if isinstance(error, BaseException):
        message = str(error)
        return message or type(error).__name__
    if isinstance(error, str):
        return error
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return "Unknown error"


def _matches(error: Any, message: str, indicators: Iterable[str], check_code: bool = True) -> bool:
    lowered = message.lower()
    code = getattr(error, "code", None)
    for indicator in indicators:
        if indicator.lower() in lowered:
            return True
        if check_code and code is not None and str(code) == indicator:
            return True
    return False


class ErrorHandler:
    """Классификатор ошибок + координатор ретраев и RPC failover."""

    def __init__(
        self,
        provider_pool: ProviderPool | None = None,
        retry_config: RetryConfig | None = None,
        max_log_size: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        cfg = get_settings().retry
        self.provider_pool = provider_pool or ProviderPool()
        self.retry_config = retry_config or RetryConfig.from_settings(cfg)
        self.error_log = ErrorLog(max_log_size or cfg.error_log_size)
        self._sleep = sleep

    def classify(self, error: Any, context: ErrorContext) -> ErrorDetails:
        message = extract_error_message(error)

        if isinstance(error, NETWORK_EXCEPTIONS) or _matches(error, message, NETWORK_INDICATORS):
            return ErrorDetails(
                type=ErrorType.NETWORK,
                severity=ErrorSeverity.MEDIUM,
                message=message,
                user_message="Network connection issue. Trying alternative connection...",
                should_retry=True,
                retry_delay=self.retry_config.base_delay,
                suggested_action="Check your internet connection and try again",
                context=context,
            )
        if _matches(error, message, USER_ACTION_INDICATORS):
            return ErrorDetails(
                type=ErrorType.USER_ACTION,
                severity=ErrorSeverity.LOW,
                message=message,
                user_message="Transaction was cancelled by user",
                should_retry=False,
                suggested_action="Submit the transaction again if you want to proceed",
                context=context,
            )
        if _matches(error, message, GAS_INDICATORS, check_code=False) or getattr(
            error, "code", None
        ) == "INSUFFICIENT_FUNDS":
            return ErrorDetails(
                type=ErrorType.GAS,
                severity=ErrorSeverity.MEDIUM,
                message=message,
                user_message="Insufficient gas to complete transaction",
                should_retry=False,
                suggested_action="Add funds or raise the gas limit",
                context=context,
            )
        if _matches(error, message, CONTRACT_INDICATORS):
            return ErrorDetails(
                type=ErrorType.CONTRACT,
                severity=ErrorSeverity.HIGH,
                message=message,
                user_message="Transaction failed due to contract conditions",
                should_retry=False,
                suggested_action="Check the transaction parameters and contract state",
                context=context,
            )
        return ErrorDetails(
            type=ErrorType.UNKNOWN,
            severity=ErrorSeverity.HIGH,
            message=message,
            user_message="An unexpected error occurred",
            should_retry=True,
            retry_delay=self.retry_config.base_delay,
            suggested_action="Please try again or contact support if the issue persists",
            context=context,
        )

    async def handle_error(self, error: Any, context: ErrorContext) -> ErrorDetails:
        """Классифицирует, пишет в журнал и при сетевой ошибке меняет RPC-узел."""

        details = self.classify(error, context)
        self.log_error(details)
        if details.type is ErrorType.NETWORK and len(self.provider_pool.providers) > 1:
            self.provider_pool.switch_provider()
            details.user_message = "Switched to backup network connection. Please try again."
        return details

    async def retry_operation(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ErrorContext,
        config: RetryConfig | None = None,
        **overrides: Any,
    ) -> T:
        """Выполняет операцию с ретраями. После исчерпания пробрасывает исходную ошибку."""

        cfg = replace(config or self.retry_config, **overrides)
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                details = self.classify(exc, context.with_data(attempt=attempt))
                if not details.should_retry:
                    self.log_error(details)
                    raise
                if attempt >= cfg.max_retries:
                    details.context = details.context.with_data(retries_exhausted=True)
                    self.log_error(details)
                    raise
                if details.type is ErrorType.NETWORK:
                    self.provider_pool.switch_provider()
                delay = cfg.delay_for(attempt)
                logger.debug(
                    "{op}: попытка {attempt} не удалась ({kind}), повтор через {delay:.2f}s",
                    op=context.operation,
                    attempt=attempt + 1,
                    kind=details.type.value,
                    delay=delay,
                )
                await self._sleep(delay)
                attempt += 1

    def log_error(self, details: ErrorDetails) -> None:
        self.error_log.append(details)
        logger.log(
            level_for_severity(details.severity),
            "[{kind}/{severity}] {op}: {message} (address={addr})",
            kind=details.type.value,
            severity=details.severity.value,
            op=details.context.operation,
            message=details.message,
            addr=details.context.user_address or "-",
        )

    def get_error_logs(
        self,
        type: ErrorType | None = None,
        severity: ErrorSeverity | None = None,
        since: float | None = None,
        limit: int | None = None,
    ) -> list[ErrorDetails]:
        return self.error_log.query(type=type, severity=severity, since=since, limit=limit)

    def clear_error_logs(self) -> None:
        self.error_log.clear()

    @property
    def current_provider(self) -> RpcProvider | None:
        return self.provider_pool.current


__all__ = [
    "ErrorHandler",
    "ErrorLog",
    "ProviderPool",
    "RetryConfig",
    "RpcProvider",
    "extract_error_message",
]
