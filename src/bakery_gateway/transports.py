"""
Per-connection SSE transports for the MCP server.

Each ``GET /sse`` connection gets its own :class:`SseTransport`, registered
under a transport-assigned session id. Clients post JSON-RPC messages to
``/messages?sessionId=<id>`` and the multiplexer routes them to the matching
transport. The entry is removed when the event stream closes.
"""
import enum
import logging
import uuid
from contextlib import asynccontextmanager

import anyio
from mcp import types
from mcp.shared.message import SessionMessage
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import Receive, Scope, Send

logger = logging.getLogger(__name__)


class MissingSessionKey(Exception):
    """A request arrived without the session key needed to route it."""


class UnknownSession(Exception):
    """No open transport matches the given session id."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"No transport found for sessionId: {session_id}")


class TransportState(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class SseTransport:
    """Memory streams connecting one SSE client to one MCP server run."""

    def __init__(self, session_id: str, endpoint: str):
        self.session_id = session_id
        self.endpoint = endpoint
        self.state = TransportState.CONNECTING
        # inbound: POST /messages -> server
        self._read_writer, self.read_stream = anyio.create_memory_object_stream(0)
        # outbound: server -> event stream
        self.write_stream, self._write_reader = anyio.create_memory_object_stream(0)

    @property
    def message_url(self) -> str:
        return f"{self.endpoint}?sessionId={self.session_id}"

    async def deliver(self, message: types.JSONRPCMessage) -> None:
        if self.state is TransportState.CLOSED:
            raise UnknownSession(self.session_id)
        await self._read_writer.send(SessionMessage(message))

    async def sse_writer(self, sse_send) -> None:
        async with sse_send, self._write_reader:
            await sse_send.send({"event": "endpoint", "data": self.message_url})
            self.state = TransportState.OPEN
            async for session_message in self._write_reader:
                logger.debug("Sending to %s: %s", self.session_id, session_message)
                await sse_send.send(
                    {
                        "event": "message",
                        "data": session_message.message.model_dump_json(
                            by_alias=True, exclude_none=True
                        ),
                    }
                )

    async def aclose(self) -> None:
        self.state = TransportState.CLOSED
        await self._read_writer.aclose()
        await self._write_reader.aclose()


class TransportMultiplexer:
    def __init__(self, endpoint: str = "/messages"):
        self._endpoint = endpoint
        self._transports: dict[str, SseTransport] = {}

    def __len__(self) -> int:
        return len(self._transports)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._transports

    def open(self) -> SseTransport:
        transport = SseTransport(uuid.uuid4().hex, self._endpoint)
        self._transports[transport.session_id] = transport
        logger.info("Created new SSE transport with session ID: %s", transport.session_id)
        return transport

    def lookup(self, session_id: str | None) -> SseTransport:
        if not session_id:
            raise MissingSessionKey("Missing sessionId parameter")
        transport = self._transports.get(session_id)
        if transport is None:
            raise UnknownSession(session_id)
        return transport

    def close(self, session_id: str) -> None:
        transport = self._transports.pop(session_id, None)
        if transport is not None:
            transport.state = TransportState.CLOSED
            logger.info("SSE connection closed: %s", session_id)

    @asynccontextmanager
    async def connect(self, scope: Scope, receive: Receive, send: Send):
        transport = self.open()
        sse_send, sse_receive = anyio.create_memory_object_stream(0)

        async def response_wrapper(scope: Scope, receive: Receive, send: Send):
            await EventSourceResponse(
                content=sse_receive,
                data_sender_callable=lambda: transport.sse_writer(sse_send),
            )(scope, receive, send)
            await transport.aclose()

        try:
            async with anyio.create_task_group() as tg:
                tg.start_soon(response_wrapper, scope, receive, send)
                yield transport
        finally:
            self.close(transport.session_id)

    async def handle_post_message(self, request: Request) -> Response:
        session_id = request.query_params.get("sessionId")

        try:
            transport = self.lookup(session_id)
        except MissingSessionKey as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except UnknownSession as exc:
            logger.warning("%s", exc)
            return JSONResponse({"error": str(exc)}, status_code=404)

        body = await request.body()
        try:
            message = types.JSONRPCMessage.model_validate_json(body)
        except ValidationError as exc:
            logger.error("Failed to parse message for %s: %s", session_id, exc)
            return JSONResponse(
                {"error": f"Could not parse message: {exc}"}, status_code=400
            )

        logger.info("Received message for sessionId: %s", session_id)
        try:
            await transport.deliver(message)
        except UnknownSession as exc:
            return JSONResponse({"error": str(exc)}, status_code=404)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as exc:
            logger.exception("Error handling message")
            return JSONResponse(
                {"error": f"Error handling message: {exc!r}"}, status_code=500
            )

        return Response("Accepted", status_code=202)
