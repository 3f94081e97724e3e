"""JSON-RPC и WebSocket клиент леджера против локального aiohttp-сервера."""

import asyncio
import json
from typing import Any

import pytest
from aiohttp import test_utils, web
from conftest import OWNER, TX_HASH
from loguru import logger

from auction.exceptions import LedgerRPCError
from auction.models import ErrorContext, ErrorType
from auction.services.core.error_handler import ErrorHandler, ProviderPool, RpcProvider
from auction.services.ledger.gateway import EventKind
from auction.services.ledger.rpc_client import LedgerRPCClient
from config.settings import LedgerSettings

CONTRACT = "0x" + "c" * 40


class FakeLedgerNode:
    """Минимальный JSON-RPC узел: ответы задаются по имени метода."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.responses: dict[str, dict[str, Any]] = {}
        self.ws_connections = 0
        self.ws_messages: list[dict[str, Any]] = []
        self.app = web.Application()
        self.app.router.add_post("/rpc", self.rpc)
        self.app.router.add_post("/down", self.down)
        self.app.router.add_get("/ws", self.ws)

    def reply(self, method: str, result: Any = None, error: Any = None) -> None:
        self.responses[method] = {"error": error} if error is not None else {"result": result}

    async def rpc(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.calls.append(body)
        response = {"jsonrpc": "2.0", "id": body["id"], **self.responses.get(body["method"], {"result": None})}
        return web.json_response(response)

    async def down(self, request: web.Request) -> web.Response:
        return web.Response(status=503, text="maintenance")

    async def ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        self.ws_connections += 1
        self.ws_messages.append(await ws.receive_json())
        if self.ws_connections == 1:
            # Первое соединение рвём, клиент должен переподключиться.
            await ws.close()
            return ws
        await ws.send_str("not json")
        await ws.send_json({"type": "position.updated", "payload": {"owner": OWNER, "positionId": 1}})
        await ws.send_json({"type": "position.created", "payload": {"owner": OWNER.upper(), "positionId": "0x2"}})
        async for _ in ws:
            pass
        return ws


@pytest.fixture
async def node():
    fake = FakeLedgerNode()
    server = test_utils.TestServer(fake.app)
    await server.start_server()
    fake.server = server
    yield fake
    await server.close()


def _settings(node: FakeLedgerNode, ws: bool = False) -> LedgerSettings:
    return LedgerSettings(
        contract_address=CONTRACT,
        ws_endpoint=str(node.server.make_url("/ws")).replace("http", "ws", 1) if ws else None,
        request_timeout=5,
        ws_reconnect_delay=0.01,
    )


@pytest.fixture
async def client(node: FakeLedgerNode):
    pool = ProviderPool([RpcProvider(url=str(node.server.make_url("/rpc")), name="Local")])
    rpc = LedgerRPCClient(pool, _settings(node))
    await rpc.start()
    yield rpc
    await rpc.close()


class TestRpcCalls:
    async def test_positions_length_accepts_hex(self, client: LedgerRPCClient, node: FakeLedgerNode) -> None:
        node.reply("auction_getPositionsLength", "0x3")

        assert await client.get_positions_length() == 3
        assert node.calls[0]["method"] == "auction_getPositionsLength"
        assert node.calls[0]["params"] == [CONTRACT]

    async def test_get_position_parses_record(self, client: LedgerRPCClient, node: FakeLedgerNode) -> None:
        node.reply(
            "auction_getPosition",
            {
                "owner": OWNER,
                "amountTokens": "1000000000000000000000",
                "buyPrice": "25000000",
                "createdAt": 1_749_990_000,
                "unlockAt": 1_750_000_000,
                "partId": 4,
                "league": 2,
                "closed": False,
            },
        )

        raw = await client.get_position(7)

        assert node.calls[0]["params"] == [CONTRACT, 7]
        assert raw.amount_tokens == 10**21
        assert raw.league == 2
        assert raw.to_position(7, 1_750_000_001).league.name == "Diamond"

    async def test_missing_position_raises(self, client: LedgerRPCClient) -> None:
        with pytest.raises(LedgerRPCError):
            await client.get_position(99)

    async def test_json_rpc_error_is_classifiable(self, client: LedgerRPCClient, node: FakeLedgerNode) -> None:
        node.reply("auction_sell", error={"code": -32000, "message": "execution reverted: locked"})

        with pytest.raises(LedgerRPCError) as exc_info:
            await client.submit_sell(OWNER, 1)

        assert exc_info.value.code == -32000
        details = ErrorHandler().classify(exc_info.value, ErrorContext(operation="sell"))
        assert details.type is ErrorType.CONTRACT

    async def test_submit_buy_sends_amount_as_string(self, client: LedgerRPCClient, node: FakeLedgerNode) -> None:
        node.reply("auction_buy", TX_HASH)

        assert await client.submit_buy(OWNER, 25_000_000) == TX_HASH
        assert node.calls[0]["params"] == [CONTRACT, {"from": OWNER, "amount": "25000000"}]

    async def test_receipt(self, client: LedgerRPCClient, node: FakeLedgerNode) -> None:
        node.reply("eth_getTransactionReceipt", {"status": "0x1", "blockNumber": "0x10"})

        receipt = await client.get_transaction_receipt(TX_HASH)

        assert receipt.succeeded
        assert receipt.block_number == 16

    async def test_missing_receipt_and_transaction(self, client: LedgerRPCClient) -> None:
        assert await client.get_transaction_receipt(TX_HASH) is None
        assert await client.get_transaction(TX_HASH) is None

    async def test_call_before_start(self, node: FakeLedgerNode) -> None:
        pool = ProviderPool([RpcProvider(url=str(node.server.make_url("/rpc")), name="Local")])
        rpc = LedgerRPCClient(pool, _settings(node))

        with pytest.raises(LedgerRPCError):
            await rpc.rpc_call("auction_getPositionsLength")


class TestFailover:
    async def test_provider_is_resolved_per_call(self, node: FakeLedgerNode) -> None:
        pool = ProviderPool(
            [
                RpcProvider(url=str(node.server.make_url("/down")), name="Primary", priority=10),
                RpcProvider(url=str(node.server.make_url("/rpc")), name="Backup", priority=1),
            ]
        )
        rpc = LedgerRPCClient(pool, _settings(node))
        await rpc.start()
        node.reply("auction_getPositionsLength", 5)
        try:
            with pytest.raises(LedgerRPCError) as exc_info:
                await rpc.get_positions_length()
            assert exc_info.value.code == 503

            pool.switch_provider()
            assert await rpc.get_positions_length() == 5
        finally:
            await rpc.close()


class TestEvents:
    async def test_ws_reconnects_and_dispatches(self, node: FakeLedgerNode) -> None:
        pool = ProviderPool([RpcProvider(url=str(node.server.make_url("/rpc")), name="Local")])
        rpc = LedgerRPCClient(pool, _settings(node, ws=True))
        await rpc.start()
        received = asyncio.Queue()

        async def on_event(event):
            await received.put(event)

        try:
            rpc.subscribe(EventKind.CREATED, OWNER, on_event)
            event = await asyncio.wait_for(received.get(), timeout=5)
        finally:
            await rpc.close()

        assert event.kind is EventKind.CREATED
        assert event.position_id == 2
        assert node.ws_connections == 2
        assert node.ws_messages[0] == {
            "type": "subscribe",
            "topic": "position.created",
            "owner": OWNER,
            "contract": CONTRACT,
        }
        assert received.empty()

    async def test_unsubscribe_stops_delivery(self, node: FakeLedgerNode) -> None:
        pool = ProviderPool([RpcProvider(url=str(node.server.make_url("/rpc")), name="Local")])
        rpc = LedgerRPCClient(pool, _settings(node))
        await rpc.start()
        delivered = []

        async def on_event(event):
            delivered.append(event)

        subscription = rpc.subscribe(EventKind.CLOSED, OWNER, on_event)
        subscription.unsubscribe()
        payload = {"type": "position.closed", "payload": {"owner": OWNER, "positionId": 1}}
        await rpc._handle_ws_payload(json.dumps(payload))
        await rpc.close()

        assert delivered == []

    async def test_failed_live_subscribe_is_logged_and_released(self, node: FakeLedgerNode) -> None:
        class _BrokenSocket:
            closed = False

            async def send_json(self, data: Any) -> None:
                raise ConnectionResetError("socket closed")

        pool = ProviderPool([RpcProvider(url=str(node.server.make_url("/rpc")), name="Local")])
        rpc = LedgerRPCClient(pool, _settings(node, ws=True))
        await rpc.start()
        rpc._ws_task = asyncio.create_task(asyncio.sleep(3600))
        rpc._ws = _BrokenSocket()
        warnings: list[str] = []
        sink = logger.add(lambda message: warnings.append(str(message)), level="WARNING")

        async def on_event(event):
            pass

        try:
            rpc.subscribe(EventKind.CLOSED, OWNER, on_event)
            assert len(rpc._send_tasks) == 1
            await asyncio.gather(*rpc._send_tasks)
        finally:
            logger.remove(sink)
            rpc._ws = None
            await rpc.close()

        assert rpc._send_tasks == set()
        assert any("socket closed" in line for line in warnings)
