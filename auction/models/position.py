"""Позиция пользователя в части аукциона и лиги доходности."""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any


class PositionStatus(str, Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    READY = "ready"
    CLOSED = "closed"


@dataclass(frozen=True, slots=True)
class League:
    """Вариант доходности, выбранный по диапазону цены покупки."""

    name: str
    min_price: int
    max_price: float
    profit_percent: int

    def contains(self, buy_price: int) -> bool:
        return self.min_price <= buy_price <= self.max_price


SILVER = League("Silver", 0, 999, 10)
GOLD = League("Gold", 1000, 9999, 15)
DIAMOND = League("Diamond", 10000, math.inf, 20)

# Порядок совпадает с индексами enum League в контракте.
LEAGUES: tuple[League, ...] = (SILVER, GOLD, DIAMOND)
_LEAGUES_BY_NAME = {league.name: league for league in LEAGUES}


def league_by_index(index: int) -> League | None:
    if 0 <= index < len(LEAGUES):
        return LEAGUES[index]
    return None


def league_by_name(name: str) -> League | None:
    return _LEAGUES_BY_NAME.get(name)


def league_for_price(buy_price: int) -> League:
    for league in LEAGUES:
        if league.contains(buy_price):
            return league
    return LEAGUES[0]


def derive_status(closed: bool, unlock_at: int, now: float) -> PositionStatus:
    if closed:
        return PositionStatus.CLOSED
    if now < unlock_at:
        return PositionStatus.LOCKED
    return PositionStatus.READY


@dataclass(slots=True)
class Position:
    """Ставка пользователя в одной части аукциона.

    Количества хранятся в базовых единицах (int), чтобы не терять точность.
    """

    id: int
    owner: str
    amount_tokens: int
    buy_price: int
    created_at: int
    unlock_at: int
    part_id: int
    league: League | None
    closed: bool
    status: PositionStatus
    on_chain_id: int | None = None
    transaction_hash: str | None = None

    def with_fresh_status(self, now: float) -> "Position":
        return replace(self, status=derive_status(self.closed, self.unlock_at, now))

    def is_owned_by(self, address: str) -> bool:
        return self.owner.lower() == address.lower()


def position_to_dict(position: Position) -> dict[str, Any]:
    """Сериализация для кеша: целые количества -> десятичные строки."""

    return {
        "id": position.id,
        "on_chain_id": position.on_chain_id,
        "owner": position.owner,
        "amount_tokens": str(position.amount_tokens),
        "buy_price": str(position.buy_price),
        "created_at": position.created_at,
        "unlock_at": position.unlock_at,
        "part_id": position.part_id,
        "league": position.league.name,
        "closed": position.closed,
        "status": position.status.value,
        "transaction_hash": position.transaction_hash,
    }


def position_from_dict(data: dict[str, Any]) -> Position:
    """Обратное преобразование. Бросает ValueError/KeyError/TypeError на мусоре."""

    league = league_by_name(data["league"])
    if league is None:
        raise ValueError(f"Неизвестная лига: {data['league']!r}")
    return Position(
        id=int(data["id"]),
        on_chain_id=None if data.get("on_chain_id") is None else int(data["on_chain_id"]),
        owner=str(data["owner"]),
        amount_tokens=int(data["amount_tokens"]),
        buy_price=int(data["buy_price"]),
        created_at=int(data["created_at"]),
        unlock_at=int(data["unlock_at"]),
        part_id=int(data["part_id"]),
        league=league,
        closed=bool(data["closed"]),
        status=PositionStatus(data["status"]),
        transaction_hash=data.get("transaction_hash"),
    )


__all__ = [
    "DIAMOND",
    "GOLD",
    "LEAGUES",
    "League",
    "Position",
    "PositionStatus",
    "SILVER",
    "derive_status",
    "league_by_index",
    "league_by_name",
    "league_for_price",
    "position_from_dict",
    "position_to_dict",
]
