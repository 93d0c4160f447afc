"""Operation Dispatcher.

Routes each operation to exactly one transport, decided once from its kind:
subscriptions go to the WebSocket transport, queries and mutations to HTTP.
Query results pass through the identity-scoped result cache.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from typing import Any

from .cache import FetchPolicy, ResultCache
from .coordinator import TransportKind
from .operation import Operation, OperationKind
from .transport.http import HTTPTransport
from .transport.websocket import WebSocketTransport

logger = logging.getLogger(__name__)


class OperationDispatcher:
    """Classifies operations and hands them to the matching transport."""

    def __init__(
        self,
        http: HTTPTransport,
        streaming: WebSocketTransport,
        cache: ResultCache,
        default_fetch_policy: FetchPolicy = FetchPolicy.CACHE_FIRST,
    ) -> None:
        self._http = http
        self._streaming = streaming
        self._cache = cache
        self._default_fetch_policy = default_fetch_policy

    @staticmethod
    def route(operation: Operation) -> TransportKind:
        if operation.kind is OperationKind.SUBSCRIPTION:
            return TransportKind.WEBSOCKET
        return TransportKind.HTTP

    async def execute(
        self,
        operation: Operation,
        fetch_policy: FetchPolicy | None = None,
    ) -> dict[str, Any]:
        """Run a query or mutation.

        Raises:
            ValueError: If the operation is a subscription
            GraphQLClientError: One normalized error on failure
        """
        if self.route(operation) is not TransportKind.HTTP:
            raise ValueError("Subscriptions must be consumed with subscribe()")

        policy = FetchPolicy(fetch_policy or self._default_fetch_policy)
        cacheable = operation.kind is OperationKind.QUERY
        key = operation.cache_key()

        if cacheable and policy is FetchPolicy.CACHE_FIRST:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug(f"Serving {operation.id} from cache")
                return cached

        # Captured before the request; a session reset meanwhile voids the write
        generation = self._cache.generation
        data = await self._http.execute(operation)

        if cacheable and policy is not FetchPolicy.NO_CACHE:
            self._cache.put(key, data, generation)
        return data

    def subscribe(self, operation: Operation) -> AsyncGenerator[dict[str, Any], None]:
        """Start a subscription on the streaming transport.

        Raises:
            ValueError: If the operation is not a subscription
        """
        if self.route(operation) is not TransportKind.WEBSOCKET:
            raise ValueError(f"{operation.kind.value} operations must be run with execute()")
        return self._streaming.subscribe(operation)
