import asyncio
import socket

import anyio
import httpx
import pytest
import uvicorn
from mcp import ClientSession
from mcp.client.sse import sse_client
from mcp.shared.message import SessionMessage
from mcp.types import JSONRPCMessage, JSONRPCResponse

from bakery_gateway.server import create_app
from bakery_gateway.transports import (
    MissingSessionKey,
    TransportMultiplexer,
    TransportState,
    UnknownSession,
)

PING = {"jsonrpc": "2.0", "id": 1, "method": "ping"}


@pytest.fixture
def multiplexer() -> TransportMultiplexer:
    return TransportMultiplexer("/messages")


@pytest.fixture
def app(gateway, multiplexer):
    return create_app(gateway, multiplexer)


def asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


class TestMultiplexer:
    def test_open_registers_transport(self, multiplexer):
        transport = multiplexer.open()

        assert transport.session_id in multiplexer
        assert transport.state is TransportState.CONNECTING
        assert transport.message_url == f"/messages?sessionId={transport.session_id}"
        assert multiplexer.lookup(transport.session_id) is transport

    def test_close_removes_transport(self, multiplexer):
        transport = multiplexer.open()

        multiplexer.close(transport.session_id)
        multiplexer.close(transport.session_id)

        assert len(multiplexer) == 0
        assert transport.state is TransportState.CLOSED

    def test_lookup_errors(self, multiplexer):
        with pytest.raises(MissingSessionKey):
            multiplexer.lookup(None)
        with pytest.raises(UnknownSession, match="nope"):
            multiplexer.lookup("nope")

    @pytest.mark.asyncio
    async def test_sse_writer_streams_endpoint_then_messages(self, multiplexer):
        transport = multiplexer.open()
        sse_send, sse_receive = anyio.create_memory_object_stream(10)

        async with anyio.create_task_group() as tg:
            tg.start_soon(transport.sse_writer, sse_send)

            endpoint = await sse_receive.receive()
            assert endpoint == {"event": "endpoint", "data": transport.message_url}
            assert transport.state is TransportState.OPEN

            reply = JSONRPCMessage(JSONRPCResponse(jsonrpc="2.0", id=1, result={}))
            await transport.write_stream.send(SessionMessage(reply))
            event = await sse_receive.receive()
            assert event["event"] == "message"
            assert '"id":1' in event["data"]

            await transport.write_stream.aclose()


class TestHttpSurface:
    @pytest.mark.asyncio
    async def test_health(self, app, bakery):
        bakery.init_body = {"message": "down"}
        async with asgi_client(app) as client:
            response = await client.get("/health")

        assert response.status_code == 200
        assert response.text == "OK"

    @pytest.mark.asyncio
    async def test_homepage_lists_endpoints(self, app):
        async with asgi_client(app) as client:
            response = await client.get("/")

        assert response.status_code == 200
        assert "/sse" in response.text
        assert "/messages?sessionId=SESSION_ID" in response.text
        assert "BakeryRequest" in response.text

    @pytest.mark.asyncio
    async def test_post_without_session_id(self, app):
        async with asgi_client(app) as client:
            response = await client.post("/messages", json=PING)

        assert response.status_code == 400
        assert response.json() == {"error": "Missing sessionId parameter"}

    @pytest.mark.asyncio
    async def test_post_unknown_session(self, app):
        async with asgi_client(app) as client:
            response = await client.post("/messages?sessionId=deadbeef", json=PING)

        assert response.status_code == 404
        assert "deadbeef" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_post_invalid_message(self, app, multiplexer):
        transport = multiplexer.open()
        async with asgi_client(app) as client:
            response = await client.post(
                f"/messages?sessionId={transport.session_id}", content=b"{not json"
            )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_post_routes_to_transport(self, app, multiplexer):
        transport = multiplexer.open()
        received = []

        async def read_one():
            received.append(await transport.read_stream.receive())

        async with anyio.create_task_group() as tg:
            tg.start_soon(read_one)
            async with asgi_client(app) as client:
                response = await client.post(
                    f"/messages?sessionId={transport.session_id}", json=PING
                )

        assert response.status_code == 202
        assert received[0].message.root.method == "ping"

    @pytest.mark.asyncio
    async def test_post_to_closed_transport(self, app, multiplexer):
        transport = multiplexer.open()
        await transport.aclose()
        # still registered; only its stream is closed
        assert transport.session_id in multiplexer

        async with asgi_client(app) as client:
            response = await client.post(
                f"/messages?sessionId={transport.session_id}", json=PING
            )

        assert response.status_code == 404
        assert response.json() == {
            "error": f"No transport found for sessionId: {transport.session_id}"
        }

    def test_app_keeps_given_multiplexer(self, app, gateway, multiplexer):
        assert app.state.multiplexer is multiplexer
        assert app.state.gateway is gateway


def free_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class TestSseConnection:
    @pytest.mark.asyncio
    async def test_connect_call_and_disconnect(self, app, multiplexer, bakery):
        port = free_port()
        server = uvicorn.Server(
            uvicorn.Config(
                app,
                host="127.0.0.1",
                port=port,
                lifespan="off",
                log_level="warning",
                timeout_graceful_shutdown=1,
            )
        )
        serving = asyncio.create_task(server.serve())
        try:
            while not server.started:
                await asyncio.sleep(0.01)

            async with sse_client(f"http://127.0.0.1:{port}/sse") as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    assert len(multiplexer) == 1

                    result = await session.call_tool("BakeryRequest", {"prompt": "rye?"})

                    assert result.isError is False
                    assert result.content[0].text == "rye?"
                    assert result.meta == {"toolUsed": None}
                    # downstream session is keyed by the transport id
                    assert bakery.init_calls[0]["sessionId"] in multiplexer

            for _ in range(100):
                if len(multiplexer) == 0:
                    break
                await asyncio.sleep(0.05)
            assert len(multiplexer) == 0
        finally:
            server.should_exit = True
            await serving
