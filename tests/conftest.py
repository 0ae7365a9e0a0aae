import json

import httpx
import pytest

from bakery_gateway.bakery_client import INIT_CONFIRMATION, BakeryClient
from bakery_gateway.capabilities import Gateway
from bakery_gateway.sessions import SessionRegistry


class FakeBakery:
    """In-process stand-in for the Flour Bakery API.

    By default it confirms every init and echoes chat messages back.
    """

    def __init__(self):
        self.init_calls: list[dict] = []
        self.chat_calls: list[dict] = []
        self.init_body: dict = {"message": INIT_CONFIRMATION, "tools": ["search"]}
        self.chat_status = 200
        self.chat_body: dict | None = None
        self.tool_used: str | None = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        payload = json.loads(request.content)
        if request.url.path == "/api/init":
            self.init_calls.append(payload)
            return httpx.Response(200, json=self.init_body)
        if request.url.path == "/api/chat":
            self.chat_calls.append(payload)
            body = self.chat_body
            if body is None:
                body = {"response": payload["message"], "toolUsed": self.tool_used}
            return httpx.Response(self.chat_status, json=body)
        return httpx.Response(404, json={"error": "not found"})


@pytest.fixture
def bakery() -> FakeBakery:
    return FakeBakery()


@pytest.fixture
def client(bakery) -> BakeryClient:
    return BakeryClient(
        base_url="http://bakery.test", transport=httpx.MockTransport(bakery)
    )


@pytest.fixture
def registry(client) -> SessionRegistry:
    return SessionRegistry(client)


@pytest.fixture
def gateway(client, registry) -> Gateway:
    return Gateway(client, registry)
