"""
Command line entry point.

    python -m bakery_gateway          # stdio transport (Claude Desktop)
    python -m bakery_gateway http     # HTTP/SSE server on $PORT
"""
import argparse
import asyncio
import logging
from typing import Sequence

import uvicorn

from bakery_gateway.server import SERVER_NAME, create_app, create_gateway, run_stdio
from bakery_gateway.settings import settings

logger = logging.getLogger("bakery_gateway")


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="bakery-gateway",
        description=f"{SERVER_NAME}: expose the Flour Bakery API over MCP.",
    )
    parser.add_argument(
        "mode",
        nargs="?",
        choices=["stdio", "http"],
        default="stdio",
        help="transport to serve on (default: stdio)",
    )
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> None:
    args = parse_args(argv)
    # stderr only; stdout carries protocol frames in stdio mode
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(levelname)s:%(name)s: %(message)s",
    )

    if args.mode == "http":
        logger.info("Starting %s in HTTP/SSE server mode", SERVER_NAME)
        uvicorn.run(
            create_app(config=settings),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    else:
        logger.info("Starting %s in stdio server mode (default)", SERVER_NAME)
        asyncio.run(run_stdio(create_gateway(settings)))


if __name__ == "__main__":
    main()
