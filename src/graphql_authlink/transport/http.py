"""Request/Response transport over HTTP.

Executes one query or mutation. Pipeline, outermost first:

    network retry -> auth-failure detection -> credential attachment -> transmission

- Network retry re-runs the inner pipeline on connection failures only
  (no response, or a gateway status), with exponential backoff.
- Auth-failure detection looks for an UNAUTHENTICATED error code, forces a
  credential refresh through the RefreshCoordinator and re-transmits the
  same operation exactly once with the new Authorization header.
- Credential attachment reads the provider's current credential for every
  attempt; no credential means no header.

Wire format:
    POST <url>  {"query": ..., "variables": {...}}
    Authorization: Bearer <token>
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import httpx

from ..coordinator import RefreshCoordinator, TransportKind
from ..credentials import CredentialProvider
from ..errors import (
    AuthError,
    InternalError,
    NetworkError,
    RefreshError,
    normalize_errors,
)
from ..operation import GraphQLResponse, Operation, OperationContext, OperationKind
from .retry import RetryPolicy

if TYPE_CHECKING:
    from ..config import ClientConfig

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class RetryableResponseError(Exception):
    """A response that counts as a connection failure (e.g. 503 from a gateway)."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Server responded with retryable status {status_code}")
        self.status_code = status_code


# Failures the network retry wrapper handles; everything else propagates.
CONNECTION_FAILURES: tuple[type[Exception], ...] = (httpx.TransportError, RetryableResponseError)


class HTTPTransport:
    """Transport for queries and mutations."""

    def __init__(
        self,
        config: ClientConfig,
        provider: CredentialProvider,
        coordinator: RefreshCoordinator,
        *,
        http_client: httpx.AsyncClient | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self._provider = provider
        self._coordinator = coordinator
        self._retry_policy = retry_policy or config.http_retry_policy()
        self._sleep = sleep
        self._http_client = http_client
        self._owns_client = http_client is None
        self.transmissions = 0

    async def execute(self, operation: Operation) -> dict[str, Any]:
        """Run an operation and return its ``data``.

        Raises:
            NetworkError: Connection failed on every attempt
            AuthError: Credential rejected and could not be renewed
            ApplicationError: The server returned an application error
            InternalError: The response was malformed
        """
        if operation.kind is OperationKind.SUBSCRIPTION:
            raise ValueError("Subscriptions are not supported over HTTP")

        response = await self._with_network_retry(operation)

        if response.has_errors:
            raise normalize_errors(response.errors or [], self.config.auth_error_codes)
        if response.data is None:
            raise InternalError(details=response)
        return response.data

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def _with_network_retry(self, operation: Operation) -> GraphQLResponse:
        delays = self._retry_policy.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._with_auth_recovery(operation)
            except CONNECTION_FAILURES as e:
                delay = next(delays, None)
                if delay is None:
                    logger.warning(
                        f"Giving up on {operation.id} after {attempt} attempts: {e}"
                    )
                    raise NetworkError(details=e) from e
                logger.warning(
                    f"Network failure on {operation.id} (attempt {attempt}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                await self._sleep(delay)

    async def _with_auth_recovery(self, operation: Operation) -> GraphQLResponse:
        context = self._attach_credential(self._base_context())
        response = await self._transmit(operation, context)

        if not response.has_error_code(self.config.auth_error_codes):
            return response

        logger.info(f"Retrying {operation.id} because the server returned UNAUTHENTICATED")
        try:
            credential = await self._coordinator.refresh(TransportKind.HTTP)
        except RefreshError as e:
            raise AuthError(code=self._auth_code(response), details=e) from e

        # Exactly one more transmission; a second rejection is surfaced as is.
        retry_context = context.with_authorization(credential.access_token)
        return await self._transmit(operation, retry_context)

    def _auth_code(self, response: GraphQLResponse) -> str | None:
        for entry in response.errors or []:
            if entry.code in self.config.auth_error_codes:
                return entry.code
        return None

    def _base_context(self) -> OperationContext:
        return OperationContext(dict(self.config.headers))

    def _attach_credential(self, context: OperationContext) -> OperationContext:
        credential = self._provider.current()
        if credential is None:
            return context.without_authorization()
        return context.with_authorization(credential.access_token)

    async def _transmit(self, operation: Operation, context: OperationContext) -> GraphQLResponse:
        client = self._get_client()
        self.transmissions += 1
        response = await client.post(
            self.config.url,
            json=operation.to_payload(),
            headers=dict(context.headers),
        )

        if response.status_code in self.config.retry_statuses:
            raise RetryableResponseError(response.status_code)

        try:
            payload = response.json()
        except ValueError as e:
            raise InternalError(
                f"Server returned a non-JSON response (status {response.status_code})",
                details=response.text[:200],
            ) from e
        return GraphQLResponse.decode(payload)

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(self.config.timeout))
        return self._http_client

