"""Валидация позиций перед кешированием и показом."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Iterable

from loguru import logger

from auction.models import LEAGUES, Position, PositionStatus, derive_status, now_ts

ADDRESS_RE = re.compile(r"^0[xX][a-fA-F0-9]{40}$")
TX_HASH_RE = re.compile(r"^0x[a-fA-F0-9]{64}$")

MIN_TIMESTAMP = int(datetime(2020, 1, 1, tzinfo=timezone.utc).timestamp())
MAX_TIMESTAMP = int(datetime(2050, 1, 1, tzinfo=timezone.utc).timestamp())
MAX_PART_ID = 100


def is_valid_address(address: Any) -> bool:
    return isinstance(address, str) and bool(ADDRESS_RE.match(address))


def is_valid_tx_hash(tx_hash: Any) -> bool:
    return isinstance(tx_hash, str) and bool(TX_HASH_RE.match(tx_hash))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _valid_timestamp(value: Any) -> bool:
    return _is_int(value) and MIN_TIMESTAMP <= value <= MAX_TIMESTAMP


def validation_errors(position: Any, now: float | None = None) -> list[str]:
    """Возвращает список нарушений; пустой список означает валидную позицию."""

    if not isinstance(position, Position):
        return ["not a Position"]
    now = now_ts() if now is None else now
    errors: list[str] = []
    if not _is_int(position.id) or position.id < 0:
        errors.append("id must be a non-negative integer")
    if not is_valid_address(position.owner):
        errors.append("owner must be a valid address")
    if not _is_int(position.amount_tokens) or position.amount_tokens < 0:
        errors.append("amount_tokens must be a non-negative integer")
    if not _is_int(position.buy_price) or position.buy_price < 0:
        errors.append("buy_price must be a non-negative integer")
    if not _valid_timestamp(position.created_at):
        errors.append("created_at is out of range")
    if not _valid_timestamp(position.unlock_at):
        errors.append("unlock_at is out of range")
    if _is_int(position.created_at) and _is_int(position.unlock_at):
        if position.unlock_at <= position.created_at:
            errors.append("unlock_at must be after created_at")
    if not _is_int(position.part_id) or not 1 <= position.part_id <= MAX_PART_ID:
        errors.append("part_id must be within 1..100")
    if position.league not in LEAGUES:
        errors.append("unknown league")
    if not isinstance(position.closed, bool):
        errors.append("closed must be a boolean")
    elif not _status_consistent(position, now):
        errors.append("status is inconsistent with closed/unlock_at")
    if position.on_chain_id is not None and (
        not _is_int(position.on_chain_id) or position.on_chain_id < 0
    ):
        errors.append("on_chain_id must be a non-negative integer")
    if position.transaction_hash is not None and not is_valid_tx_hash(position.transaction_hash):
        errors.append("transaction_hash is malformed")
    return errors


def _status_consistent(position: Position, now: float) -> bool:
    if not isinstance(position.status, PositionStatus):
        return False
    if position.closed:
        return position.status is PositionStatus.CLOSED
    if position.status is PositionStatus.ACTIVE:
        return True
    if not _is_int(position.unlock_at):
        return False
    return position.status is derive_status(False, position.unlock_at, now)


def validate_position(position: Any, now: float | None = None) -> bool:
    errors = validation_errors(position, now)
    if errors:
        logger.warning(
            "Позиция {id} не прошла валидацию: {errors}",
            id=getattr(position, "id", "?"),
            errors="; ".join(errors),
        )
        return False
    return True


def validate_ownership(position: Position, current_address: str | None) -> bool:
    if not is_valid_address(current_address):
        logger.warning("Некорректный адрес текущего пользователя: {addr}", addr=current_address)
        return False
    if not position.is_owned_by(current_address):
        logger.warning(
            "Позиция {id} принадлежит {owner}, а не {addr}",
            id=position.id,
            owner=position.owner,
            addr=current_address,
        )
        return False
    return True


def validate_and_filter_positions(
    positions: Iterable[Any],
    current_address: str,
    now: float | None = None,
) -> list[Position]:
    """Оставляет только валидные позиции текущего владельца."""

    items = list(positions)
    valid = [
        position
        for position in items
        if validate_position(position, now) and validate_ownership(position, current_address)
    ]
    logger.debug("Валидно {ok} из {total} позиций", ok=len(valid), total=len(items))
    return valid


__all__ = [
    "is_valid_address",
    "is_valid_tx_hash",
    "validate_and_filter_positions",
    "validate_ownership",
    "validate_position",
    "validation_errors",
]
