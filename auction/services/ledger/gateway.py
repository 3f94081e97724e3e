"""Контракт удалённого леджера, который потребляет слой синхронизации."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from auction.models import Position, TransactionReceipt, derive_status, league_by_index


class EventKind(str, Enum):
    CREATED = "created"
    CLOSED = "closed"


@dataclass(slots=True)
class RawPosition:
    """Запись позиции в том виде, в каком её отдаёт контракт."""

    owner: str
    amount_tokens: int
    buy_price: int
    created_at: int
    unlock_at: int
    part_id: int
    league: int
    closed: bool

    def to_position(self, index: int, now: float) -> Position:
        """Неизвестный индекс лиги даёт league=None, такую позицию отбросит валидация."""

        return Position(
            id=index,
            on_chain_id=index,
            owner=self.owner,
            amount_tokens=int(self.amount_tokens),
            buy_price=int(self.buy_price),
            created_at=int(self.created_at),
            unlock_at=int(self.unlock_at),
            part_id=int(self.part_id),
            league=league_by_index(int(self.league)),
            closed=bool(self.closed),
            status=derive_status(bool(self.closed), int(self.unlock_at), now),
        )

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "RawPosition":
        return cls(
            owner=str(data["owner"]),
            amount_tokens=int(data["amountTokens"]),
            buy_price=int(data["buyPrice"]),
            created_at=int(data["createdAt"]),
            unlock_at=int(data["unlockAt"]),
            part_id=int(data["partId"]),
            league=int(data["league"]),
            closed=bool(data["closed"]),
        )


@dataclass(slots=True)
class PositionEvent:
    kind: EventKind
    owner: str
    position_id: int
    raw: dict[str, Any] = field(default_factory=dict)


EventCallback = Callable[[PositionEvent], Awaitable[None]]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class LedgerGateway(Protocol):
    async def get_positions_length(self) -> int: ...

    async def get_position(self, index: int) -> RawPosition: ...

    async def submit_buy(self, owner: str, amount: int) -> str: ...

    async def submit_sell(self, owner: str, position_id: int) -> str: ...

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None: ...

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None: ...

    def subscribe(self, kind: EventKind, owner: str, callback: EventCallback) -> Subscription: ...


__all__ = [
    "EventCallback",
    "EventKind",
    "LedgerGateway",
    "PositionEvent",
    "RawPosition",
    "Subscription",
]
