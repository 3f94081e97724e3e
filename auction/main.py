"""Точка входа: следит за позициями одного адреса до Ctrl+C."""

from __future__ import annotations

import argparse
import asyncio

from loguru import logger

from auction.loader import create_position_engine
from auction.logging_config import setup_logging
from auction.models import Position
from auction.services.ledger.gateway import LedgerGateway
from auction.services.positions.orchestrator import PositionsSnapshot
from auction.utils.validation import is_valid_address
from config.settings import AppSettings, get_settings


def _log_snapshot(snapshot: PositionsSnapshot) -> None:
    if snapshot.loading:
        return
    logger.info(
        "{owner}: {active} активных из {total} позиций{error}",
        owner=snapshot.owner,
        active=len(snapshot.active_positions),
        total=len(snapshot.positions),
        error=f" (ошибка: {snapshot.error})" if snapshot.error else "",
    )


async def run(
    owner: str,
    settings: AppSettings | None = None,
    gateway: LedgerGateway | None = None,
    stop: asyncio.Event | None = None,
) -> list[Position]:
    """Поднимает движок, делает первую синхронизацию и ждёт stop."""

    settings = settings or get_settings()
    engine = await create_position_engine(settings, gateway=gateway)
    try:
        engine.orchestrator.subscribe(_log_snapshot)
        await engine.orchestrator.set_owner(owner)
        positions = await engine.orchestrator.refresh_positions()
        for position in positions:
            logger.info(
                "#{id} часть {part} {league}: {amount} токенов, {status}",
                id=position.id,
                part=position.part_id,
                league=position.league.name,
                amount=position.amount_tokens,
                status=position.status.value,
            )
        await (stop or asyncio.Event()).wait()
        return positions
    finally:
        await engine.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description="Синхронизация позиций аукциона")
    parser.add_argument("owner", help="адрес владельца (0x...)")
    args = parser.parse_args()
    if not is_valid_address(args.owner):
        parser.error(f"некорректный адрес: {args.owner}")

    settings = get_settings()
    setup_logging(json=settings.log_json)
    logger.info("Запуск синхронизации позиций ({env})", env=settings.environment)
    try:
        asyncio.run(run(args.owner, settings))
    except KeyboardInterrupt:
        logger.info("Остановлено пользователем")


if __name__ == "__main__":
    main()
