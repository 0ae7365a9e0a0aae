import asyncio
import logging
import secrets
import string
import time

from bakery_gateway.bakery_client import BakeryClient, InitializationError

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase


def new_session_id() -> str:
    """Time-based downstream session id with a random suffix, e.g. ``mcp-1718000000000-k3j9x2``."""
    suffix = "".join(secrets.choice(_BASE36) for _ in range(11))
    return f"mcp-{int(time.time() * 1000)}-{suffix}"


class SessionRegistry:
    """Maps gateway session keys to downstream Flour Bakery sessions.

    Entries are created on first use and kept for the life of the process.
    Concurrent first calls for the same key share one pending initialization.
    """

    def __init__(self, client: BakeryClient):
        self._client = client
        self._sessions: dict[str, str] = {}
        self._pending: dict[str, asyncio.Future[str]] = {}

    def get(self, key: str) -> str | None:
        return self._sessions.get(key)

    def __contains__(self, key: str) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    async def get_or_create(self, key: str, session_id: str | None = None) -> str:
        existing = self._sessions.get(key)
        if existing is not None:
            return existing

        pending = self._pending.get(key)
        if pending is not None:
            logger.debug("Waiting on pending session init for %s", key)
            return await asyncio.shield(pending)

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            downstream_id = session_id or new_session_id()
            await self._client.initialize(downstream_id)
        except Exception as exc:
            future.set_exception(exc)
            # Mark retrieved; waiters still receive it when awaiting.
            future.exception()
            raise
        except BaseException:
            # Waiters get an error they can handle, not our cancellation.
            future.set_exception(
                InitializationError("session initialization was cancelled")
            )
            future.exception()
            raise
        else:
            self._sessions[key] = downstream_id
            future.set_result(downstream_id)
            return downstream_id
        finally:
            self._pending.pop(key, None)
