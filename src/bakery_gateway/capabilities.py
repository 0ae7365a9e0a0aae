import logging

from mcp.types import CallToolResult, GetPromptResult, PromptMessage, TextContent
from pydantic import AnyHttpUrl, BaseModel, ConfigDict, Field, ValidationError

from bakery_gateway.bakery_client import (
    BakeryClient,
    ChatResult,
    DownstreamError,
    InitializationError,
)
from bakery_gateway.sessions import SessionRegistry
from bakery_gateway.transports import MissingSessionKey

logger = logging.getLogger(__name__)

WEBSITE_INSTRUCTION = "Please fetch the website at {url} and summarize its content."


class ChatPromptArgs(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str = Field(min_length=1)


class BakeryRequestArgs(BaseModel):
    model_config = ConfigDict(frozen=True)

    prompt: str = Field(min_length=1)


class FetchWebsiteArgs(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: AnyHttpUrl


def _preview(text: str, limit: int = 50) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _error_result(message: str) -> CallToolResult:
    return CallToolResult(
        content=[TextContent(type="text", text=message)],
        isError=True,
    )


class Gateway:
    """Capability handlers backed by the Flour Bakery chat API.

    Every handler takes the caller's session key explicitly; the key selects
    (and lazily creates) the downstream session in the registry.
    """

    def __init__(
        self,
        client: BakeryClient,
        registry: SessionRegistry | None = None,
        website_tool_enabled: bool = True,
    ):
        self.client = client
        self.registry = registry if registry is not None else SessionRegistry(client)
        self.website_tool_enabled = website_tool_enabled

    async def _exchange(
        self, session_key: str, text: str, session_id: str | None = None
    ) -> ChatResult:
        if not session_key:
            raise MissingSessionKey("No session key available for this request")
        downstream_id = await self.registry.get_or_create(session_key, session_id)
        return await self.client.send_message(downstream_id, text)

    async def chat(
        self, session_key: str, message: str, session_id: str | None = None
    ) -> GetPromptResult:
        if not session_key:
            raise MissingSessionKey("No session key available for the chat prompt")

        try:
            args = ChatPromptArgs(message=message)
            result = await self._exchange(session_key, args.message, session_id)
        except (InitializationError, DownstreamError, ValidationError) as exc:
            logger.error("Error sending message to Flour Bakery: %s", exc)
            return GetPromptResult(
                messages=[
                    PromptMessage(
                        role="assistant",
                        content=TextContent(
                            type="text",
                            text=f"Sorry, I couldn't get a response from Flour Bakery: {exc}",
                        ),
                    )
                ]
            )

        reply = result.response
        if result.tool_used:
            reply += f"\n\n(Tool used: {result.tool_used})"
        return GetPromptResult(
            messages=[
                PromptMessage(
                    role="user", content=TextContent(type="text", text=message)
                ),
                PromptMessage(
                    role="assistant", content=TextContent(type="text", text=reply)
                ),
            ]
        )

    async def bakery_request(
        self, session_key: str, prompt: str, session_id: str | None = None
    ) -> CallToolResult:
        try:
            args = BakeryRequestArgs(prompt=prompt)
        except ValidationError as exc:
            return _error_result(f"Invalid request: {exc}")

        logger.info('Sending request to Flour Bakery: "%s"', _preview(args.prompt))
        return await self._forward(session_key, args.prompt, session_id)

    async def fetch_website(
        self, session_key: str, url: str, session_id: str | None = None
    ) -> CallToolResult:
        try:
            args = FetchWebsiteArgs(url=url)
        except ValidationError as exc:
            return _error_result(f"Invalid URL {url!r}: {exc}")

        # The downstream assistant does the fetching; we only ask it to.
        logger.info("Asking Flour Bakery to fetch %s", args.url)
        instruction = WEBSITE_INSTRUCTION.format(url=args.url)
        return await self._forward(session_key, instruction, session_id)

    async def _forward(
        self, session_key: str, text: str, session_id: str | None
    ) -> CallToolResult:
        try:
            result = await self._exchange(session_key, text, session_id)
        except (InitializationError, DownstreamError, MissingSessionKey) as exc:
            logger.error("Error processing request with Flour Bakery: %s", exc)
            return _error_result(f"Error communicating with Flour Bakery: {exc}")

        logger.info(
            "Response received from Flour Bakery%s",
            f" (used tool: {result.tool_used})" if result.tool_used else "",
        )
        return CallToolResult(
            content=[TextContent(type="text", text=result.response)],
            _meta={"toolUsed": result.tool_used},
        )
