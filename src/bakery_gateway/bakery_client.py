import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

logger = logging.getLogger(__name__)

BAKERY_API_URL = "https://bakery-client-production.up.railway.app"
INIT_CONFIRMATION = "Session initialized successfully"


class InitializationError(Exception):
    """The downstream service did not confirm a new session."""


class DownstreamError(Exception):
    """A chat exchange with the downstream service did not succeed."""


class DownstreamStatusError(DownstreamError):
    def __init__(self, status_code: int, detail: str = ""):
        self.status_code = status_code
        message = f"Flour Bakery returned HTTP {status_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DownstreamApplicationError(DownstreamError):
    def __init__(self, error: str, status_code: int):
        self.error = error
        self.status_code = status_code
        super().__init__(error)


class MalformedResponseError(DownstreamError):
    pass


@dataclass
class InitResult:
    session_id: str
    tools: list[Any] = field(default_factory=list)


@dataclass
class ChatResult:
    response: str
    tool_used: str | None = None


class BakeryClient:
    """Thin async wrapper around the Flour Bakery HTTP API."""

    def __init__(
        self,
        base_url: str = BAKERY_API_URL,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    async def initialize(self, session_id: str) -> InitResult:
        try:
            response = await self._http.post(
                "/api/init", json={"sessionId": session_id}
            )
            data = response.json()
        except httpx.HTTPError as exc:
            raise InitializationError(
                f"Failed to initialize session: {exc}"
            ) from exc
        except ValueError as exc:
            raise InitializationError(
                f"Failed to initialize session: invalid JSON (HTTP {response.status_code})"
            ) from exc

        if not isinstance(data, dict) or data.get("message") != INIT_CONFIRMATION:
            logger.error(
                "Unexpected init response for %s (HTTP %d): %r",
                session_id,
                response.status_code,
                data,
            )
            raise InitializationError(
                "Failed to initialize session with Flour Bakery"
            )

        tools = data.get("tools") or []
        logger.info("Initialized session with Flour Bakery: %s", session_id)
        logger.info("Available Flour Bakery tools: %s", tools)
        return InitResult(session_id=session_id, tools=list(tools))

    async def send_message(self, session_id: str, text: str) -> ChatResult:
        try:
            response = await self._http.post(
                "/api/chat", json={"sessionId": session_id, "message": text}
            )
        except httpx.HTTPError as exc:
            raise DownstreamError(f"Request to Flour Bakery failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = None

        if isinstance(data, dict) and data.get("error") is not None:
            raise DownstreamApplicationError(str(data["error"]), response.status_code)

        if response.is_error:
            raise DownstreamStatusError(response.status_code, response.reason_phrase)

        if not isinstance(data, dict):
            raise MalformedResponseError("Flour Bakery returned a non-JSON response")

        reply = data.get("response")
        if not isinstance(reply, str):
            raise MalformedResponseError(
                f"Expected a string response from Flour Bakery, got {type(reply).__name__}"
            )

        tool_used = data.get("toolUsed")
        if not isinstance(tool_used, str) or not tool_used:
            tool_used = None
        return ChatResult(response=reply, tool_used=tool_used)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "BakeryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
