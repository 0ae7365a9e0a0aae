import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse, PlainTextResponse
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.types import (
    CallToolResult,
    GetPromptResult,
    Prompt,
    PromptArgument,
    Tool,
)

from bakery_gateway.bakery_client import BakeryClient
from bakery_gateway.capabilities import Gateway
from bakery_gateway.sessions import new_session_id
from bakery_gateway.settings import Settings, settings
from bakery_gateway.transports import TransportMultiplexer

logger = logging.getLogger(__name__)

SERVER_NAME = "Flour Bakery Gateway"
SERVER_VERSION = "1.0.0"

BAKERY_REQUEST_TOOL = Tool(
    name="BakeryRequest",
    description=(
        "Send a prompt to the Flour Bakery. "
        "This can be any question, instruction, or request for content processing."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "The prompt or request to send to the Flour Bakery",
            }
        },
        "required": ["prompt"],
    },
)

FETCH_WEBSITE_TOOL = Tool(
    name="FetchWebsite",
    description=(
        "Ask the Flour Bakery assistant to fetch a website and summarize it. "
        "The gateway itself does not download the page."
    ),
    inputSchema={
        "type": "object",
        "properties": {
            "url": {
                "type": "string",
                "format": "uri",
                "description": "Address of the website to fetch",
            }
        },
        "required": ["url"],
    },
)

CHAT_PROMPT = Prompt(
    name="chat",
    description="Standard conversational interface with the Flour Bakery assistant",
    arguments=[
        PromptArgument(name="message", description="Message to send", required=True)
    ],
)


def build_server(
    gateway: Gateway, session_key: str, session_id: str | None = None
) -> Server:
    """Create an MCP server bound to one client session.

    ``session_key`` selects the downstream session in the registry;
    ``session_id``, when given, is used as the downstream id on first init.
    """
    mcp_app = Server(SERVER_NAME, version=SERVER_VERSION)

    @mcp_app.list_prompts()
    async def list_prompts() -> list[Prompt]:
        return [CHAT_PROMPT]

    @mcp_app.get_prompt()
    async def get_prompt(name: str, arguments: dict[str, str] | None) -> GetPromptResult:
        if name != CHAT_PROMPT.name:
            raise ValueError(f"Unknown prompt: {name}")
        message = (arguments or {}).get("message", "")
        return await gateway.chat(session_key, message, session_id)

    @mcp_app.list_tools()
    async def list_tools() -> list[Tool]:
        tools = [BAKERY_REQUEST_TOOL]
        if gateway.website_tool_enabled:
            tools.append(FETCH_WEBSITE_TOOL)
        return tools

    @mcp_app.call_tool()
    async def call_tool(name: str, arguments: dict) -> CallToolResult:
        if name == BAKERY_REQUEST_TOOL.name:
            return await gateway.bakery_request(
                session_key, arguments.get("prompt", ""), session_id
            )
        if name == FETCH_WEBSITE_TOOL.name and gateway.website_tool_enabled:
            return await gateway.fetch_website(
                session_key, arguments.get("url", ""), session_id
            )
        raise ValueError(f"Unknown tool: {name}")

    return mcp_app


def create_gateway(config: Settings = settings) -> Gateway:
    return Gateway(
        BakeryClient(timeout=config.downstream_timeout),
        website_tool_enabled=config.website_tool_enabled,
    )


async def run_stdio(gateway: Gateway) -> None:
    session_key = new_session_id()
    logger.info("Starting %s with stdio transport (session %s)", SERVER_NAME, session_key)
    mcp_app = build_server(gateway, session_key)
    async with gateway.client:
        async with stdio_server() as (read_stream, write_stream):
            logger.info("%s connected!", SERVER_NAME)
            await mcp_app.run(
                read_stream, write_stream, mcp_app.create_initialization_options()
            )


HOMEPAGE = """\
<html>
  <head>
    <title>{name}</title>
    <style>
      body {{ font-family: sans-serif; max-width: 800px; margin: 0 auto; padding: 20px; }}
      h1 {{ color: #333; }}
      code {{ background: #f4f4f4; padding: 2px 4px; border-radius: 3px; }}
    </style>
  </head>
  <body>
    <h1>{name}</h1>
    <p>This MCP server provides access to the Flour Bakery API through the Model Context Protocol.</p>
    <p>To use with MCP clients, connect to:</p>
    <ul>
      <li>SSE Endpoint: <code>{url}/sse</code></li>
      <li>Message Endpoint: <code>{url}/messages?sessionId=SESSION_ID</code></li>
    </ul>
    <h2>Available Capabilities</h2>
    <ul>
      {capabilities}
    </ul>
  </body>
</html>
"""


def create_app(
    gateway: Gateway | None = None,
    multiplexer: TransportMultiplexer | None = None,
    config: Settings = settings,
) -> FastAPI:
    if gateway is None:
        gateway = create_gateway(config)
    if multiplexer is None:
        multiplexer = TransportMultiplexer("/messages")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("%s listening on port %d", SERVER_NAME, config.port)
        logger.info("Visit %s for more information", config.display_url)
        yield
        logger.info("Shutting down server...")
        await gateway.client.aclose()

    app = FastAPI(title=SERVER_NAME, version=SERVER_VERSION, lifespan=lifespan)
    app.state.gateway = gateway
    app.state.multiplexer = multiplexer

    @app.get("/", response_class=HTMLResponse)
    async def homepage() -> str:
        capabilities = [
            "<li><strong>BakeryRequest Tool</strong>: Send any prompt to the Flour Bakery for processing</li>",
            "<li><strong>Chat Prompt</strong>: Standard conversational interface</li>",
        ]
        if gateway.website_tool_enabled:
            capabilities.append(
                "<li><strong>FetchWebsite Tool</strong>: Ask the Flour Bakery to read a website</li>"
            )
        return HOMEPAGE.format(
            name=SERVER_NAME,
            url=config.display_url,
            capabilities="\n      ".join(capabilities),
        )

    @app.get("/health", response_class=PlainTextResponse)
    async def health() -> str:
        return "OK"

    @app.get("/sse")
    async def handle_sse(request: Request):
        logger.info("New SSE connection")
        async with multiplexer.connect(
            request.scope, request.receive, request._send
        ) as transport:
            # The transport id doubles as the downstream session id.
            mcp_app = build_server(gateway, transport.session_id, transport.session_id)
            await mcp_app.run(
                transport.read_stream,
                transport.write_stream,
                mcp_app.create_initialization_options(),
            )

    @app.post("/messages")
    async def handle_messages(request: Request):
        return await multiplexer.handle_post_message(request)

    return app
