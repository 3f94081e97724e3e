"""JSON-RPC/WebSocket клиент леджера аукциона.

LedgerRPCClient выполняет две задачи:
1. HTTP JSON-RPC вызовы к контракту через текущий узел из ProviderPool
   (узел берётся на каждый вызов, поэтому failover срабатывает сразу).
2. WebSocket-подписку на события создания и закрытия позиций с
   переподключением после обрыва.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections import defaultdict
from typing import Any

import aiohttp
from loguru import logger

from auction.exceptions import LedgerRPCError
from auction.models import TransactionReceipt
from auction.services.core.error_handler import ProviderPool
from auction.services.ledger.gateway import EventCallback, EventKind, PositionEvent, RawPosition
from config.settings import LedgerSettings, get_settings

WS_EVENT_TYPES = {
    "position.created": EventKind.CREATED,
    "position.closed": EventKind.CLOSED,
}


def _to_int(value: Any) -> int:
    if isinstance(value, str) and value.lower().startswith("0x"):
        return int(value, 16)
    return int(value)


class _Subscription:
    def __init__(self, client: "LedgerRPCClient", topic: tuple[EventKind, str], callback: EventCallback) -> None:
        self._client = client
        self._topic = topic
        self._callback = callback

    def unsubscribe(self) -> None:
        self._client._remove_callback(self._topic, self._callback)


class LedgerRPCClient:
    """Реализация LedgerGateway поверх aiohttp."""

    def __init__(
        self,
        provider_pool: ProviderPool,
        settings: LedgerSettings | None = None,
    ) -> None:
        cfg = settings or get_settings().ledger
        self.provider_pool = provider_pool
        self.contract_address = cfg.contract_address
        self._ws_endpoint = str(cfg.ws_endpoint) if cfg.ws_endpoint else None
        self._timeout = cfg.request_timeout
        self._ws_reconnect_delay = cfg.ws_reconnect_delay
        self._session: aiohttp.ClientSession | None = None
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ws_task: asyncio.Task[None] | None = None
        self._stop_event = asyncio.Event()
        self._send_tasks: set[asyncio.Task[None]] = set()
        self._callbacks: dict[tuple[EventKind, str], set[EventCallback]] = defaultdict(set)
        self._ids = itertools.count(1)

    async def start(self) -> None:
        """Инициализирует HTTP-сессию."""

        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout)
            )
        current = self.provider_pool.current
        logger.info(
            "LedgerRPCClient готов: RPC {rpc}, WS {ws}",
            rpc=current.url if current else "-",
            ws=self._ws_endpoint or "ОТКЛЮЧЁН",
        )

    async def close(self) -> None:
        """Чисто останавливает соединения."""

        self._stop_event.set()
        for task in list(self._send_tasks):
            task.cancel()
        self._send_tasks.clear()
        if self._ws_task:
            self._ws_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._ws_task
            self._ws_task = None
        if self._session and not self._session.closed:
            await self._session.close()

    async def rpc_call(self, method: str, params: Any = None) -> Any:
        if self._session is None:
            raise LedgerRPCError("HTTP-сессия не инициализирована, вызовите start()")
        provider = self.provider_pool.current
        if provider is None:
            raise LedgerRPCError("Нет ни одного RPC-узла")
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params if params is not None else [],
        }
        async with self._session.post(provider.url, json=payload) as resp:
            if resp.status >= 400:
                text = await resp.text()
                raise LedgerRPCError(
                    f"RPC {method} завершился с HTTP {resp.status}: {text}",
                    code=resp.status,
                )
            data = await resp.json(content_type=None)
        if data.get("error"):
            error = data["error"]
            if isinstance(error, dict):
                raise LedgerRPCError(
                    str(error.get("message", error)),
                    code=error.get("code"),
                    data=error.get("data"),
                )
            raise LedgerRPCError(f"RPC ошибка {method}: {error}")
        return data.get("result")

    # ------------------------------------------------------------------
    # LedgerGateway

    async def get_positions_length(self) -> int:
        result = await self.rpc_call("auction_getPositionsLength", [self.contract_address])
        return _to_int(result)

    async def get_position(self, index: int) -> RawPosition:
        result = await self.rpc_call("auction_getPosition", [self.contract_address, index])
        if not isinstance(result, dict):
            raise LedgerRPCError(f"Позиция {index} не найдена")
        return RawPosition.from_payload(result)

    async def submit_buy(self, owner: str, amount: int) -> str:
        return str(
            await self.rpc_call(
                "auction_buy",
                [self.contract_address, {"from": owner, "amount": str(amount)}],
            )
        )

    async def submit_sell(self, owner: str, position_id: int) -> str:
        return str(
            await self.rpc_call(
                "auction_sell",
                [self.contract_address, {"from": owner, "positionId": position_id}],
            )
        )

    async def get_transaction_receipt(self, tx_hash: str) -> TransactionReceipt | None:
        result = await self.rpc_call("eth_getTransactionReceipt", [tx_hash])
        if not result:
            return None
        block = result.get("blockNumber")
        return TransactionReceipt(
            hash=tx_hash,
            status=_to_int(result.get("status", 0)),
            block_number=None if block is None else _to_int(block),
            raw=result,
        )

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        result = await self.rpc_call("eth_getTransactionByHash", [tx_hash])
        return result or None

    def subscribe(self, kind: EventKind, owner: str, callback: EventCallback) -> _Subscription:
        topic = (kind, owner.lower())
        self._callbacks[topic].add(callback)
        if self._ws_endpoint is None:
            logger.warning("WS не настроен, события {kind} придут только через поллинг", kind=kind.value)
        elif self._ws_task is None or self._ws_task.done():
            self._stop_event.clear()
            self._ws_task = asyncio.create_task(self._run_ws_loop(), name="ledger-ws-loop")
        elif self._ws is not None and not self._ws.closed:
            task = asyncio.create_task(self._subscribe_live(self._ws, topic), name="ledger-ws-subscribe")
            self._send_tasks.add(task)
            task.add_done_callback(self._send_tasks.discard)
        return _Subscription(self, topic, callback)

    def _remove_callback(self, topic: tuple[EventKind, str], callback: EventCallback) -> None:
        callbacks = self._callbacks.get(topic)
        if not callbacks:
            return
        callbacks.discard(callback)
        if not callbacks:
            del self._callbacks[topic]

    # ------------------------------------------------------------------
    # WebSocket

    async def _send_subscribe(self, ws: aiohttp.ClientWebSocketResponse, topic: tuple[EventKind, str]) -> None:
        kind, owner = topic
        await ws.send_json(
            {
                "type": "subscribe",
                "topic": f"position.{kind.value}",
                "owner": owner,
                "contract": self.contract_address,
            }
        )

    async def _subscribe_live(self, ws: aiohttp.ClientWebSocketResponse, topic: tuple[EventKind, str]) -> None:
        try:
            await self._send_subscribe(ws, topic)
        except Exception as exc:  # noqa: BLE001
            kind, owner = topic
            logger.warning(
                "Подписка {kind} для {owner} не отправлена: {error}, повторится после переподключения",
                kind=kind.value,
                owner=owner,
                error=exc,
            )

    async def _run_ws_loop(self) -> None:
        """Основной поток чтения WebSocket сообщений."""

        assert self._session is not None and self._ws_endpoint is not None
        while not self._stop_event.is_set():
            try:
                async with self._session.ws_connect(self._ws_endpoint, heartbeat=20) as ws:
                    self._ws = ws
                    for topic in list(self._callbacks):
                        await self._send_subscribe(ws, topic)
                    logger.info("Подписка на события позиций активирована")
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            await self._handle_ws_payload(msg.data)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            raise LedgerRPCError(f"WS ошибка: {ws.exception()}")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                if self._stop_event.is_set():
                    break
                logger.warning(
                    "WS леджера отвалился: {error}, переподключение через {delay}s",
                    error=str(exc),
                    delay=self._ws_reconnect_delay,
                )
            finally:
                self._ws = None
            if not self._stop_event.is_set():
                await asyncio.sleep(self._ws_reconnect_delay)

    async def _handle_ws_payload(self, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Не удалось декодировать WS сообщение: {raw}", raw=raw)
            return
        kind = WS_EVENT_TYPES.get(data.get("type"))
        if kind is None:
            return
        payload = data.get("payload") or {}
        try:
            event = PositionEvent(
                kind=kind,
                owner=str(payload["owner"]),
                position_id=_to_int(payload["positionId"]),
                raw=data,
            )
        except (KeyError, TypeError, ValueError):
            logger.debug("WS событие без owner/positionId: {raw}", raw=raw)
            return
        await self._dispatch_event(event)

    async def _dispatch_event(self, event: PositionEvent) -> None:
        callbacks = list(self._callbacks.get((event.kind, event.owner.lower()), ()))
        if not callbacks:
            return
        await asyncio.gather(*(self._safe_call(cb, event) for cb in callbacks))

    async def _safe_call(self, callback: EventCallback, event: PositionEvent) -> None:
        try:
            await callback(event)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Колбэк события позиции упал: {error}", error=exc)


__all__ = ["LedgerRPCClient"]
