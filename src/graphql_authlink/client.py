"""GraphQL client with transparent credential renewal.

Wires the credential provider, refresh coordinator, session lifecycle,
result cache and both transports behind two calls:

- execute(): queries and mutations over HTTP
- subscribe(): subscriptions over WebSocket

Usage:
    source = OAuthRefreshTokenSource(token_url, client_id, refresh_token)
    async with create_client("https://platform.example.com", source) as client:
        client.session.login("user-1", Credential(access_token=token))
        data = await client.execute("query { viewer { id } }")
        async for data in client.subscribe("subscription { recordChanged { id } }"):
            print(data)

Callers never see an expired token: they get data, or exactly one
NetworkError / AuthError / ApplicationError / InternalError.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Callable, Mapping
from typing import Any

import httpx

from .cache import FetchPolicy, ResultCache
from .config import ClientConfig
from .coordinator import RefreshCoordinator
from .credentials import Credential, CredentialProvider, CredentialSource
from .dispatcher import OperationDispatcher
from .operation import Operation
from .session import SessionLifecycle
from .transport.http import HTTPTransport, Sleep
from .transport.websocket import Connect, WebSocketTransport


class GraphQLClient:
    """Caller-facing client."""

    def __init__(
        self,
        config: ClientConfig,
        source: CredentialSource,
        *,
        credential: Credential | None = None,
        identity: str | None = None,
        logout: Callable[[], Any] | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_connect: Connect | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self.credentials = CredentialProvider(source, credential)
        self.cache = ResultCache()
        self.session = SessionLifecycle(self.credentials, logout=logout, identity=identity)
        self.coordinator = RefreshCoordinator(self.credentials, on_invalidate=self.session.invalidate)

        self.http = HTTPTransport(
            config,
            self.credentials,
            self.coordinator,
            http_client=http_client,
            sleep=sleep,
        )
        self.streaming = WebSocketTransport(
            config,
            self.credentials,
            self.coordinator,
            connect=ws_connect,
            sleep=sleep,
        )
        self.dispatcher = OperationDispatcher(
            self.http,
            self.streaming,
            self.cache,
            default_fetch_policy=config.default_fetch_policy,
        )

        # Identity changes must not leak results across users
        self.session.add_reset_hook(self.cache.clear)
        self.session.add_reset_hook(self.streaming.reset)

    async def execute(
        self,
        operation: Operation | str,
        variables: Mapping[str, Any] | None = None,
        *,
        operation_name: str | None = None,
        fetch_policy: FetchPolicy | str | None = None,
    ) -> dict[str, Any]:
        """Run a query or mutation and return its data.

        Args:
            operation: An Operation or a GraphQL document
            variables: Variables when ``operation`` is a document
            operation_name: Operation to run when the document has several
            fetch_policy: Cache behaviour for queries (default from config)

        Raises:
            GraphQLClientError: Exactly one normalized error on failure
        """
        op = self._build(operation, variables, operation_name)
        policy = FetchPolicy(fetch_policy) if fetch_policy is not None else None
        return await self.dispatcher.execute(op, policy)

    def subscribe(
        self,
        operation: Operation | str,
        variables: Mapping[str, Any] | None = None,
        *,
        operation_name: str | None = None,
    ) -> AsyncGenerator[dict[str, Any], None]:
        """Start a subscription; iterate the result for each payload's data."""
        op = self._build(operation, variables, operation_name)
        return self.dispatcher.subscribe(op)

    async def close(self) -> None:
        await self.streaming.close()
        await self.http.aclose()

    async def __aenter__(self) -> GraphQLClient:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @staticmethod
    def _build(
        operation: Operation | str,
        variables: Mapping[str, Any] | None,
        operation_name: str | None,
    ) -> Operation:
        if isinstance(operation, Operation):
            return operation
        return Operation.create(operation, variables, operation_name)


# Factory functions


def create_client(
    origin: str,
    source: CredentialSource,
    *,
    access_token: str | None = None,
    identity: str | None = None,
    logout: Callable[[], Any] | None = None,
    **config_overrides: Any,
) -> GraphQLClient:
    """Create a client for a platform origin.

    Args:
        origin: Scheme and host; endpoints are ``/graphql`` and ``/subscriptions``
        source: Where fresh access tokens come from
        access_token: Token to start with, if already signed in
        identity: Logged-in user identity
        logout: Host callback that ends the session and restarts sign-in
        **config_overrides: Other ClientConfig fields

    Returns:
        GraphQLClient ready to execute and subscribe
    """
    config = ClientConfig.from_origin(origin, **config_overrides)
    credential = Credential(access_token=access_token) if access_token else None
    return GraphQLClient(
        config,
        source,
        credential=credential,
        identity=identity,
        logout=logout,
    )
