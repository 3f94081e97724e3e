"""Shared test fixtures: fake ledger, frozen clock, instant sleep."""

from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest

from auction.models import SILVER, Position, TransactionReceipt, derive_status
from auction.services.core.error_handler import ErrorHandler, ProviderPool, RetryConfig, RpcProvider
from auction.services.ledger.gateway import EventCallback, EventKind, PositionEvent, RawPosition

OWNER = "0x" + "a" * 40
OTHER = "0x" + "b" * 40
NOW = 1_750_000_000
HOUR = 60 * 60
TX_HASH = "0x" + "1" * 64


class FakeClock:
    def __init__(self, now: float = NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SleepRecorder:
    """Замена asyncio.sleep: не ждёт, только запоминает задержки."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_position(**overrides: Any) -> Position:
    data: dict[str, Any] = {
        "id": 1,
        "on_chain_id": 1,
        "owner": OWNER,
        "amount_tokens": 1000,
        "buy_price": 10,
        "created_at": NOW - 2 * HOUR,
        "unlock_at": NOW - HOUR,
        "part_id": 1,
        "league": SILVER,
        "closed": False,
    }
    data.update(overrides)
    data.setdefault("status", derive_status(data["closed"], data["unlock_at"], NOW))
    return Position(**data)


def make_raw(**overrides: Any) -> RawPosition:
    data: dict[str, Any] = {
        "owner": OWNER,
        "amount_tokens": 1000,
        "buy_price": 10,
        "created_at": NOW - 2 * HOUR,
        "unlock_at": NOW - HOUR,
        "part_id": 1,
        "league": 0,
        "closed": False,
    }
    data.update(overrides)
    return RawPosition(**data)


class _FakeSubscription:
    def __init__(self, gateway: "FakeLedgerGateway", key: tuple[EventKind, str], callback: EventCallback) -> None:
        self._gateway = gateway
        self._key = key
        self._callback = callback

    def unsubscribe(self) -> None:
        callbacks = self._gateway.subscribers.get(self._key, [])
        if self._callback in callbacks:
            callbacks.remove(self._callback)


class FakeLedgerGateway:
    """Леджер в памяти с точками для инъекции ошибок."""

    def __init__(self, records: list[RawPosition] | None = None) -> None:
        self.records = list(records or [])
        self.length_error: Exception | None = None
        self.record_errors: dict[int, Exception] = {}
        self.submit_error: Exception | None = None
        self.receipts: dict[str, TransactionReceipt | Exception | None] = {}
        self.transactions: dict[str, dict[str, Any] | None] = {}
        self.subscribers: dict[tuple[EventKind, str], list[EventCallback]] = {}
        self.submitted: list[tuple[str, str, int]] = []
        self.position_calls: list[int] = []
        self.length_calls = 0
        self.next_hash = TX_HASH

    async def get_positions_length(self) -> int:
        self.length_calls += 1
        if self.length_error is not None:
            raise self.length_error
        return len(self.records)

    async def get_position(self, index: int) -> RawPosition:
        self.position_calls.append(index)
        if index in self.record_errors:
            raise self.record_errors[index]
        if not 0 <= index < len(self.records):
            raise IndexError(f"no position {index}")
        return replace(self.records[index])

    async def submit_buy(self, owner: str, amount: int) -> str:
        return self._submit("buy", owner, amount)

    async def submit_sell(self, owner: str, position_id: int) -> str:
        return self._submit("sell", owner, position_id)

    def _submit(self, kind: str, owner: str, value: int) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append((kind, owner, value))
        return self.next_hash

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        receipt = self.receipts.get(tx_hash)
        if isinstance(receipt, Exception):
            raise receipt
        return receipt

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        return self.transactions.get(tx_hash)

    def subscribe(self, kind: EventKind, owner: str, callback: EventCallback) -> _FakeSubscription:
        key = (kind, owner.lower())
        self.subscribers.setdefault(key, []).append(callback)
        return _FakeSubscription(self, key, callback)

    async def emit(self, kind: EventKind, owner: str, position_id: int) -> None:
        event = PositionEvent(kind=kind, owner=owner, position_id=position_id)
        for callback in list(self.subscribers.get((kind, owner.lower()), [])):
            await callback(event)

    def confirm(self, tx_hash: str = TX_HASH, status: int = 1) -> None:
        self.receipts[tx_hash] = TransactionReceipt(hash=tx_hash, status=status, block_number=1)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def provider_pool() -> ProviderPool:
    return ProviderPool(
        [
            RpcProvider(url="https://backup.example", name="Backup", priority=5),
            RpcProvider(url="https://primary.example", name="Primary", priority=10),
        ]
    )


@pytest.fixture
def error_handler(provider_pool: ProviderPool, sleep: SleepRecorder) -> ErrorHandler:
    return ErrorHandler(
        provider_pool=provider_pool,
        retry_config=RetryConfig(max_retries=3, base_delay=1.0, backoff_multiplier=2.0, max_delay=10.0),
        max_log_size=100,
        sleep=sleep,
    )


@pytest.fixture
def gateway() -> FakeLedgerGateway:
    return FakeLedgerGateway(
        [
            make_raw(),
            make_raw(owner=OTHER, part_id=2),
            make_raw(buy_price=1500, league=1, unlock_at=NOW + HOUR, part_id=3),
        ]
    )
