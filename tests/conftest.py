"""Pytest configuration and shared fixtures.

Fakes for the three collaborators the client talks to:
- FakeCredentialSource: the upstream token issuer
- FakeGraphQLBackend: an HTTP GraphQL server behind httpx.MockTransport
- FakeGraphQLWSServer: a scripted graphql-transport-ws server
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, ConnectionClosedOK
from websockets.frames import Close

from graphql_authlink.client import GraphQLClient
from graphql_authlink.config import ClientConfig
from graphql_authlink.credentials import Credential, RefreshResult

UNAUTHENTICATED_BODY = {
    "data": None,
    "errors": [{"message": "Unauthenticated", "extensions": {"code": "UNAUTHENTICATED"}}],
}


# =============================================================================
# Credential source
# =============================================================================


class FakeCredentialSource:
    """Issues tokens from a list; counts upstream calls."""

    def __init__(
        self,
        tokens: tuple[str, ...] = ("T2",),
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.tokens = list(tokens)
        self.delay = delay
        self.error = error
        self.calls = 0

    async def refresh(self, force: bool) -> RefreshResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        token = self.tokens[min(self.calls, len(self.tokens)) - 1]
        return RefreshResult(access_token=token)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records backoff delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


# =============================================================================
# HTTP backend
# =============================================================================


class FakeGraphQLBackend:
    """GraphQL endpoint that accepts a set of bearer tokens."""

    def __init__(self, valid_tokens: tuple[str, ...] = ("T1",), data: dict | None = None) -> None:
        self.valid_tokens = set(valid_tokens)
        self.data = data if data is not None else {"viewer": {"id": "user-1"}}
        self.require_auth = True
        self.network_failures = 0
        self.responses: list[httpx.Response] = []
        self.requests: list[httpx.Request] = []

    @property
    def authorizations(self) -> list[str | None]:
        return [request.headers.get("authorization") for request in self.requests]

    def bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.network_failures > 0:
            self.network_failures -= 1
            raise httpx.ConnectError("Connection refused", request=request)
        if self.responses:
            return self.responses.pop(0)

        if self.require_auth:
            token = request.headers.get("authorization", "").removeprefix("Bearer ")
            if token not in self.valid_tokens:
                return httpx.Response(200, json=UNAUTHENTICATED_BODY)
        return httpx.Response(200, json={"data": self.data})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


# =============================================================================
# graphql-transport-ws server
# =============================================================================


class FakeWebSocket:
    """Client side of one fake connection (the websockets ClientConnection surface)."""

    def __init__(self, server: FakeGraphQLWSServer, index: int) -> None:
        self.server = server
        self.index = index
        self.sent: list[dict[str, Any]] = []
        self.close_code: int | None = None
        self._incoming: asyncio.Queue[Any] = asyncio.Queue()
        self._closed: ConnectionClosed | None = None

    async def send(self, message: str) -> None:
        if self._closed is not None:
            raise self._closed
        parsed = json.loads(message)
        self.sent.append(parsed)
        self.server.handle(self, parsed)

    async def recv(self) -> str:
        item = await self._incoming.get()
        if isinstance(item, ConnectionClosed):
            self._incoming.put_nowait(item)
            raise item
        return json.dumps(item)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed is not None:
            return
        self.close_code = code
        self._closed = ConnectionClosedOK(None, Close(code, reason))
        self._incoming.put_nowait(self._closed)

    # Server side

    def push(self, message: dict[str, Any]) -> None:
        self._incoming.put_nowait(message)

    def server_close(self, code: int, reason: str = "") -> None:
        if self._closed is not None:
            return
        self.close_code = code
        self._closed = ConnectionClosedError(Close(code, reason), None)
        self._incoming.put_nowait(self._closed)

    @property
    def types_sent(self) -> list[str]:
        return [message["type"] for message in self.sent]


class FakeGraphQLWSServer:
    """Scripted graphql-transport-ws server.

    connection_init is acknowledged when its authorization carries an
    accepted token, otherwise the socket is closed with 4403. Each subscribe
    is answered with ``results`` as next messages, then either a scripted
    close code (``close_after_subscribe``) or complete.
    """

    def __init__(self, accept: tuple[str, ...] = ("T1",)) -> None:
        self.accept = set(accept)
        self.results: list[dict[str, Any]] = [{"recordChanged": {"id": "r1"}}]
        self.complete = True
        self.close_after_subscribe: list[int] = []
        self.error_payload: list[dict[str, Any]] | None = None
        self.ping_after_ack = False
        self.fail_connects = 0
        self.gate: asyncio.Event | None = None  # Holds connects open until set

        self.sockets: list[FakeWebSocket] = []
        self.connect_calls: list[tuple[str, dict[str, Any]]] = []
        self.init_payloads: list[Any] = []
        self.subscribed: list[dict[str, Any]] = []
        self.completed: list[str] = []

    async def connect(self, url: str, **kwargs: Any) -> FakeWebSocket:
        self.connect_calls.append((url, kwargs))
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise OSError("Connection refused")
        if self.gate is not None:
            await self.gate.wait()
        socket = FakeWebSocket(self, len(self.sockets))
        self.sockets.append(socket)
        return socket

    @property
    def authorizations(self) -> list[str]:
        return [(payload or {}).get("authorization", "") for payload in self.init_payloads]

    def handle(self, socket: FakeWebSocket, message: dict[str, Any]) -> None:
        kind = message["type"]
        if kind == "connection_init":
            self.init_payloads.append(message.get("payload"))
            auth = (message.get("payload") or {}).get("authorization", "")
            if auth.removeprefix("Bearer ") in self.accept:
                socket.push({"type": "connection_ack"})
                if self.ping_after_ack:
                    socket.push({"type": "ping"})
            else:
                socket.server_close(4403, "Forbidden")
        elif kind == "subscribe":
            self.subscribed.append(message)
            sub_id = message["id"]
            if self.error_payload is not None:
                socket.push({"type": "error", "id": sub_id, "payload": self.error_payload})
                return
            for data in self.results:
                socket.push({"type": "next", "id": sub_id, "payload": {"data": data}})
            if self.close_after_subscribe:
                socket.server_close(self.close_after_subscribe.pop(0), "Scripted close")
            elif self.complete:
                socket.push({"type": "complete", "id": sub_id})
        elif kind == "complete":
            self.completed.append(message["id"])


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def source() -> FakeCredentialSource:
    return FakeCredentialSource()


@pytest.fixture
def backend() -> FakeGraphQLBackend:
    return FakeGraphQLBackend()


@pytest.fixture
def ws_server() -> FakeGraphQLWSServer:
    return FakeGraphQLWSServer()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def make_client(
    source: FakeCredentialSource,
    backend: FakeGraphQLBackend,
    ws_server: FakeGraphQLWSServer,
    sleep: RecordingSleep,
) -> Callable[..., GraphQLClient]:
    """Factory for clients wired to the fakes above."""

    def factory(
        token: str | None = "T1",
        identity: str | None = "user-1",
        logout: Callable[[], Any] | None = None,
        **config: Any,
    ) -> GraphQLClient:
        return GraphQLClient(
            ClientConfig(url="http://test/graphql", ws_url="ws://test/subscriptions", **config),
            source,
            credential=Credential(access_token=token) if token else None,
            identity=identity,
            logout=logout,
            http_client=backend.client(),
            ws_connect=ws_server.connect,
            sleep=sleep,
        )

    return factory


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Yield to the event loop until a condition holds."""

    async def wait(condition: Callable[[], bool], iterations: int = 500) -> None:
        for _ in range(iterations):
            if condition():
                return
            await asyncio.sleep(0)
        raise AssertionError("Condition not reached")

    return wait
