"""Глобальные настройки слоя синхронизации позиций.

Настройки разделены по доменам (леджер, ретраи, кеш, мониторинг транзакций,
торговые лимиты), поэтому каждый сервис получает только свою секцию.
Вся конфигурация загружается из переменных окружения через Pydantic Settings.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import (
    AnyHttpUrl,
    AnyUrl,
    BaseModel,
    Field,
    NonNegativeFloat,
    PositiveFloat,
    PositiveInt,
    field_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent
ACCESSIBLE_ENV_FILE = BASE_DIR / "config" / "runtime.env"
DEFAULT_ENV_FILE = BASE_DIR / ".env"
ENV_FILE = ACCESSIBLE_ENV_FILE if ACCESSIBLE_ENV_FILE.exists() else DEFAULT_ENV_FILE


class RpcProviderSettings(BaseModel):
    """Один RPC-узел из списка для failover."""

    url: AnyHttpUrl
    name: str
    priority: int = 0
    is_active: bool = True


def _default_providers() -> list[RpcProviderSettings]:
    return [
        RpcProviderSettings(url="https://rpc.ankr.com/eth", name="Ankr", priority=10),
        RpcProviderSettings(url="https://cloudflare-eth.com", name="Cloudflare", priority=5),
    ]


class LedgerSettings(BaseModel):
    """RPC/WebSocket точки леджера и адрес контракта аукциона."""

    providers: list[RpcProviderSettings] = Field(default_factory=_default_providers)
    ws_endpoint: AnyUrl | None = Field(
        None, description="WebSocket для событий Buy/Sell (без него работает только поллинг)"
    )
    contract_address: str = Field(
        "0x0000000000000000000000000000000000000000",
        description="Адрес контракта аукциона",
    )
    request_timeout: PositiveFloat = 10.0
    ws_reconnect_delay: PositiveFloat = 3.0

    @field_validator("ws_endpoint", mode="before")
    @classmethod
    def _empty_str_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class RetrySettings(BaseModel):
    """Экспоненциальный backoff и размер журнала ошибок."""

    max_retries: int = Field(3, ge=0)
    base_delay: NonNegativeFloat = 1.0
    backoff_multiplier: PositiveFloat = 2.0
    max_delay: NonNegativeFloat = 10.0
    error_log_size: PositiveInt = 1000


class SyncSettings(BaseModel):
    """Фоновая синхронизация позиций."""

    poll_interval_sec: PositiveFloat = 30.0
    max_failed_fetch_ratio: float = Field(default=0.5, ge=0.0, le=1.0)


class MonitorSettings(BaseModel):
    """Поллинг квитанций транзакций."""

    check_interval_sec: NonNegativeFloat = 5.0
    max_retries: PositiveInt = 5


class CacheSettings(BaseModel):
    """Память + персистентный слой (memory / sqlite через SQLModel)."""

    ttl_seconds: PositiveInt = 60 * 60
    cleanup_age_seconds: PositiveInt = 7 * 24 * 60 * 60
    compression_threshold: PositiveInt = 1024
    encryption_min_positions: PositiveInt = 5
    kdf_iterations: PositiveInt = 100_000
    memory_namespace: str = "positions"
    backend: Literal["memory", "sqlite"] = "sqlite"
    storage_dsn: str = Field(
        "sqlite+aiosqlite:///./positions_cache.db",
        description="Строка подключения SQLAlchemy/SQLModel для персистентного кеша",
    )
    echo: bool = False


class PerformanceSettings(BaseModel):
    """Батч-загрузка, debounce и TTL-кеш запросов."""

    batch_size: PositiveInt = 50
    max_concurrent_batches: PositiveInt = 3
    delay_between_batches: NonNegativeFloat = 0.1
    request_cache_ttl: PositiveFloat = 5 * 60
    request_cache_max_size: PositiveInt = 1000
    refresh_debounce_sec: NonNegativeFloat = 1.0


class TradingSettings(BaseModel):
    """Ограничения на покупки/продажи, заданные правилами аукциона."""

    min_buy_usd: PositiveFloat = 20.0
    daily_buy_limit: PositiveInt = 2
    daily_sell_limit: PositiveInt = 2
    usd_decimals: int = Field(6, ge=0, le=18)
    status_reset_delay_sec: NonNegativeFloat = 3.0
    failed_status_reset_delay_sec: NonNegativeFloat = 5.0


class AppSettings(BaseSettings):
    """Главный контейнер настроек."""

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: Literal["dev", "prod"] = "dev"
    log_json: bool = False
    ledger: LedgerSettings = LedgerSettings()
    retry: RetrySettings = RetrySettings()
    sync: SyncSettings = SyncSettings()
    monitor: MonitorSettings = MonitorSettings()
    cache: CacheSettings = CacheSettings()
    performance: PerformanceSettings = PerformanceSettings()
    trading: TradingSettings = TradingSettings()

    @property
    def is_production(self) -> bool:
        """True, если слой запущен в продовой среде."""

        return self.environment == "prod"


_settings: AppSettings | None = None


def get_settings() -> AppSettings:
    """Возвращает единый экземпляр настроек.

    Значения кэшируются, поэтому .env читается ровно один раз за процесс.
    Сервисы принимают секции явно и обращаются сюда только за значениями по умолчанию.
    """

    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings


__all__ = [
    "AppSettings",
    "CacheSettings",
    "LedgerSettings",
    "MonitorSettings",
    "PerformanceSettings",
    "RetrySettings",
    "RpcProviderSettings",
    "SyncSettings",
    "TradingSettings",
    "get_settings",
]
