"""Машина состояний торговой операции (покупка/продажа)."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from auction.exceptions import InvalidTransition
from auction.models import TransactionType, now_ts


class OperationState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OperationState.CONFIRMED, OperationState.FAILED)


ALLOWED_TRANSITIONS: dict[OperationState, frozenset[OperationState]] = {
    OperationState.IDLE: frozenset({OperationState.SUBMITTING}),
    OperationState.SUBMITTING: frozenset({OperationState.PENDING, OperationState.FAILED}),
    OperationState.PENDING: frozenset({OperationState.CONFIRMED, OperationState.FAILED}),
    OperationState.CONFIRMED: frozenset({OperationState.IDLE}),
    OperationState.FAILED: frozenset({OperationState.IDLE}),
}


@dataclass(slots=True)
class TradeOperation:
    type: TransactionType
    owner: str
    state: OperationState = OperationState.IDLE
    tx_hash: str | None = None
    error: str | None = None
    history: list[tuple[OperationState, float]] = field(default_factory=list)

    def transition(self, target: OperationState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.type.value}: {self.state.value} -> {target.value}")
        self.state = target
        self.history.append((target, now_ts()))

    def submitting(self) -> None:
        self.transition(OperationState.SUBMITTING)

    def pending(self, tx_hash: str) -> None:
        self.transition(OperationState.PENDING)
        self.tx_hash = tx_hash

    def confirmed(self) -> None:
        self.transition(OperationState.CONFIRMED)

    def failed(self, error: str | None) -> None:
        self.transition(OperationState.FAILED)
        self.error = error

    def reset(self) -> None:
        self.transition(OperationState.IDLE)


__all__ = ["ALLOWED_TRANSITIONS", "OperationState", "TradeOperation"]
