"""Streaming transport over WebSocket (graphql-transport-ws).

One multiplexed connection carries every active subscription. It is opened
lazily by the first subscription and closed when the last one ends.

Connection state machine:

    IDLE -> CONNECTING -> CONNECTED -> CLOSED_NORMAL | CLOSED_AUTH_FAILURE | CLOSED_ERROR
         -> CONNECTING (reconnect) | TERMINATED

Every connect attempt computes fresh connection parameters. When the
previous connection was closed with 4403 Forbidden, the record's
``refresh_needed`` flag is set and the next attempt first awaits a credential
refresh (joining any refresh already in flight), so the reconnect never
reuses the rejected token. If that refresh fails the session is
invalidated and every subscription ends with AuthError. Consecutive 4403
closes with no result in between are capped at the retry budget, after
which subscriptions end with AuthError. A refresh or connect overtaken by a
session reset is discarded and the connection is retried at once with the
new session's credential.

Other close codes follow the built-in policy: fatal graphql-ws codes end
all subscriptions, anything else reconnects with exponential backoff. The
retry counter resets on connection_ack.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable, Coroutine
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

from ..coordinator import RefreshCoordinator, TransportKind
from ..credentials import CredentialProvider
from ..errors import (
    AuthError,
    GraphQLClientError,
    InternalError,
    NetworkError,
    RefreshError,
    StaleRefreshError,
    normalize_errors,
    normalize_exception,
)
from ..operation import GraphQLErrorEntry, GraphQLResponse, Operation, OperationKind
from .messages import SUBPROTOCOL, CloseCode, GraphQLWSMessage, MessageType, is_fatal_close
from .retry import RetryPolicy

if TYPE_CHECKING:
    from ..config import ClientConfig

logger = logging.getLogger(__name__)

Connect = Callable[..., Awaitable[Any]]
Sleep = Callable[[float], Awaitable[None]]


class ConnectionState(str, Enum):
    """Streaming connection state machine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSED_NORMAL = "closed_normal"
    CLOSED_AUTH_FAILURE = "closed_auth_failure"
    CLOSED_ERROR = "closed_error"
    TERMINATED = "terminated"


@dataclass
class ConnectionRecord:
    """Mutable state of the single streaming connection.

    Only the connect/close transitions of WebSocketTransport write it.
    """

    state: ConnectionState = ConnectionState.IDLE
    refresh_needed: bool = False
    retries: int = 0
    generation: int = 0
    last_close_code: int | None = None
    connects: int = 0
    forbidden_closes: int = 0  # Consecutive 4403 closes since results last arrived


class _Signal(Enum):
    NEXT = "next"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass
class _Subscription:
    id: str
    operation: Operation
    queue: asyncio.Queue[tuple[_Signal, Any]] = field(default_factory=asyncio.Queue)
    done: bool = False  # No further deliveries
    server_active: bool = True  # Server still considers it running

    def deliver(self, signal: _Signal, value: Any = None) -> None:
        if self.done:
            return
        if signal is not _Signal.NEXT:
            self.done = True
        self.queue.put_nowait((signal, value))

    def discard_pending(self) -> None:
        """Drop undelivered results, keeping a terminal signal if one is queued."""
        kept = []
        while not self.queue.empty():
            item = self.queue.get_nowait()
            if item[0] is not _Signal.NEXT:
                kept.append(item)
        for item in kept:
            self.queue.put_nowait(item)


class _FatalClose(Exception):
    def __init__(self, code: int, reason: str = "") -> None:
        super().__init__(f"Connection closed with {code}: {reason}")
        self.code = code
        self.reason = reason


def _close_info(exc: ConnectionClosed) -> tuple[int, str]:
    frame = exc.rcvd or exc.sent
    if frame is None:
        return CloseCode.ABNORMAL, ""
    return frame.code, frame.reason


class WebSocketTransport:
    """Transport for subscriptions."""

    def __init__(
        self,
        config: ClientConfig,
        provider: CredentialProvider,
        coordinator: RefreshCoordinator,
        *,
        connect: Connect | None = None,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.config = config
        self._provider = provider
        self._coordinator = coordinator
        self._connect = connect or websockets.connect
        self._retry_policy = retry_policy or config.ws_retry_policy()
        self._sleep = sleep

        self.record = ConnectionRecord()
        self._subscriptions: dict[str, _Subscription] = {}
        self._ws: Any = None  # websockets ClientConnection
        self._runner: asyncio.Task[None] | None = None
        self._restart_requested = False
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> ConnectionState:
        return self.record.state

    @property
    def is_connected(self) -> bool:
        return self.record.state is ConnectionState.CONNECTED and self._ws is not None

    @property
    def active_subscriptions(self) -> int:
        return sum(1 for sub in self._subscriptions.values() if not sub.done)

    async def subscribe(self, operation: Operation) -> AsyncGenerator[dict[str, Any], None]:
        """Start a subscription and yield each result's ``data``.

        The iterator survives reconnects; it ends when the server completes
        the subscription and raises one normalized error on terminal failure.
        """
        if operation.kind is not OperationKind.SUBSCRIPTION:
            raise ValueError(f"Expected a subscription operation, got {operation.kind.value}")

        sub = _Subscription(id=uuid.uuid4().hex, operation=operation)
        self._subscriptions[sub.id] = sub

        if self.is_connected:
            await self._send_subscribe(self._ws, sub)
        self._ensure_runner()

        try:
            while True:
                signal, value = await sub.queue.get()
                if signal is _Signal.NEXT:
                    yield value
                elif signal is _Signal.ERROR:
                    raise value
                else:
                    return
        finally:
            self._subscriptions.pop(sub.id, None)
            sub.done = True
            if sub.server_active and self.is_connected:
                await self._send(self._ws, GraphQLWSMessage.complete(sub.id))
            if not self._has_active():
                await self._close_idle_connection()

    def reset(self) -> None:
        """Tear down the connection after a session identity change.

        Synchronous: results from the current connection are dropped from
        this point on. Active subscriptions are re-established on a new
        connection using the current credential.
        """
        record = self.record
        record.generation += 1
        record.refresh_needed = False
        record.forbidden_closes = 0
        for sub in self._subscriptions.values():
            sub.discard_pending()

        # Also covers a connect or refresh still in flight
        self._restart_requested = True
        ws = self._ws
        if ws is None:
            return
        logger.info("Resetting subscription connection for the new session")
        self._spawn(self._close_quietly(ws, CloseCode.NORMAL, "Session reset"))

    async def close(self) -> None:
        """Close the connection and end every subscription."""
        for sub in self._subscriptions.values():
            sub.server_active = False
            sub.deliver(_Signal.COMPLETE)

        ws = self._ws
        runner = self._runner
        if runner is not None and not runner.done():
            runner.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await runner
        self._runner = None
        if ws is not None:
            await self._close_quietly(ws, CloseCode.NORMAL, "Client closed")
        self._ws = None
        self.record.state = ConnectionState.IDLE

        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task

    # Connection management

    def _has_active(self) -> bool:
        return any(not sub.done for sub in self._subscriptions.values())

    def _ensure_runner(self) -> None:
        if self._runner is None or self._runner.done():
            self._runner = asyncio.create_task(self._run())

    async def _run(self) -> None:
        record = self.record
        record.retries = 0
        self._restart_requested = False
        try:
            while self._has_active():
                try:
                    await self._connect_once()
                except StaleRefreshError:
                    # The new session's credential is already current
                    self._restart_requested = False
                    continue
                except RefreshError as e:
                    self._terminate(AuthError(details=e))
                    return
                except _FatalClose as e:
                    self._terminate(
                        InternalError(f"Subscription connection closed ({e.code}): {e.reason}")
                    )
                    return

                if not self._has_active():
                    break
                if (
                    record.state is ConnectionState.CLOSED_AUTH_FAILURE
                    and record.forbidden_closes > self._retry_policy.max_attempts
                ):
                    logger.warning(
                        "Server kept rejecting refreshed credentials "
                        f"({record.forbidden_closes} Forbidden closes)"
                    )
                    self._terminate(AuthError())
                    return
                if self._restart_requested:
                    self._restart_requested = False
                    continue
                if record.retries >= self._retry_policy.max_attempts:
                    logger.warning(
                        f"Giving up on subscription connection after {record.retries} retries"
                    )
                    if record.state is ConnectionState.CLOSED_AUTH_FAILURE:
                        self._terminate(AuthError())
                    else:
                        self._terminate(NetworkError())
                    return

                delay = self._retry_policy.delay_for(record.retries)
                record.retries += 1
                logger.info(
                    f"Reconnecting subscriptions in {delay:.2f}s (retry {record.retries})"
                )
                await self._sleep(delay)
        except Exception as e:
            logger.exception("Subscription connection loop failed")
            self._terminate(normalize_exception(e))
        finally:
            if record.state is not ConnectionState.TERMINATED:
                record.state = ConnectionState.IDLE

    async def _connect_once(self) -> None:
        record = self.record
        record.state = ConnectionState.CONNECTING
        self._restart_requested = False
        generation = record.generation
        params = await self._connection_params()
        if generation != record.generation:
            # Params were computed for the previous session
            self._restart_requested = True
            return

        try:
            ws = await self._connect(
                self.config.websocket_url,
                subprotocols=[SUBPROTOCOL],
                open_timeout=self.config.timeout,
                ping_interval=30,
                ping_timeout=10,
            )
        except (OSError, TimeoutError, InvalidHandshake) as e:
            logger.warning(f"Subscription connection failed: {e}")
            record.state = ConnectionState.CLOSED_ERROR
            record.last_close_code = CloseCode.ABNORMAL
            return

        record.connects += 1
        if generation != record.generation:
            logger.info("Session changed while connecting; reconnecting subscriptions")
            await self._close_quietly(ws, CloseCode.NORMAL, "Session reset")
            record.state = ConnectionState.CLOSED_NORMAL
            self._restart_requested = True
            return
        self._ws = ws
        try:
            code, reason = await self._serve(ws, params, generation)
        finally:
            if self._ws is ws:
                self._ws = None
        self._on_close(code, reason, generation)

    async def _connection_params(self) -> dict[str, Any]:
        """Parameters for connection_init, computed on every attempt."""
        record = self.record
        if record.refresh_needed:
            logger.info("Refreshing access token before reconnecting subscriptions")
            try:
                credential = await self._coordinator.refresh(TransportKind.WEBSOCKET)
            finally:
                record.refresh_needed = False
        else:
            credential = self._provider.current()
        return {"authorization": credential.authorization_header() if credential else ""}

    async def _serve(self, ws: Any, params: dict[str, Any], generation: int) -> tuple[int, str]:
        """Handshake, resubscribe and pump messages until the socket closes."""
        try:
            await ws.send(GraphQLWSMessage.connection_init(params).to_json())
            try:
                await asyncio.wait_for(
                    self._await_ack(ws), timeout=self.config.connection_ack_timeout
                )
            except TimeoutError:
                logger.warning("Server did not acknowledge the subscription connection")
                reason = "Connection acknowledgement timeout"
                await self._close_quietly(
                    ws, CloseCode.CONNECTION_ACKNOWLEDGEMENT_TIMEOUT, reason
                )
                return CloseCode.CONNECTION_ACKNOWLEDGEMENT_TIMEOUT, reason

            self.record.state = ConnectionState.CONNECTED
            self.record.retries = 0
            logger.info("Subscription connection established")

            for sub in [s for s in self._subscriptions.values() if not s.done]:
                sub.server_active = True
                await self._send_subscribe(ws, sub)

            while True:
                raw = await ws.recv()
                if generation != self.record.generation:
                    continue  # Connection belongs to a previous session
                await self._handle_message(ws, raw)
        except ConnectionClosed as e:
            return _close_info(e)
        except _FatalClose as e:
            await self._close_quietly(ws, e.code, e.reason)
            raise

    async def _await_ack(self, ws: Any) -> None:
        while True:
            message = self._decode(await ws.recv())
            if message.type is MessageType.CONNECTION_ACK:
                return
            if message.type is MessageType.PING:
                await ws.send(GraphQLWSMessage.pong().to_json())
                continue
            raise _FatalClose(
                CloseCode.BAD_RESPONSE, f"Unexpected {message.type.value} before connection_ack"
            )

    def _on_close(self, code: int, reason: str, generation: int) -> None:
        record = self.record
        record.last_close_code = code

        if generation != record.generation or self._restart_requested:
            record.state = ConnectionState.CLOSED_NORMAL
            self._restart_requested = True
            return

        if code == CloseCode.FORBIDDEN:
            logger.info("Server closed the subscription connection with Forbidden")
            record.state = ConnectionState.CLOSED_AUTH_FAILURE
            record.refresh_needed = True
            record.forbidden_closes += 1
        elif is_fatal_close(code):
            record.state = ConnectionState.CLOSED_ERROR
            raise _FatalClose(code, reason)
        elif code == CloseCode.NORMAL:
            record.state = ConnectionState.CLOSED_NORMAL
        else:
            logger.warning(f"Subscription connection closed ({code}): {reason}")
            record.state = ConnectionState.CLOSED_ERROR

    def _terminate(self, error: GraphQLClientError) -> None:
        self.record.state = ConnectionState.TERMINATED
        for sub in self._subscriptions.values():
            sub.server_active = False
            sub.deliver(_Signal.ERROR, error)

    async def _close_idle_connection(self) -> None:
        ws = self._ws
        if ws is None:
            return
        # A subscription arriving before the runner exits reconnects without backoff
        self._restart_requested = True
        await self._close_quietly(ws, CloseCode.NORMAL, "Normal Closure")

    # Messages

    def _decode(self, raw: str | bytes) -> GraphQLWSMessage:
        try:
            return GraphQLWSMessage.from_json(raw)
        except ValueError as e:
            raise _FatalClose(CloseCode.BAD_RESPONSE, f"Invalid message: {e}") from e

    async def _handle_message(self, ws: Any, raw: str | bytes) -> None:
        message = self._decode(raw)
        msg_type = message.type

        if msg_type is MessageType.PING:
            await ws.send(GraphQLWSMessage.pong(message.payload).to_json())
            return
        if msg_type in (MessageType.PONG, MessageType.CONNECTION_ACK):
            return
        if msg_type not in (MessageType.NEXT, MessageType.ERROR, MessageType.COMPLETE):
            raise _FatalClose(CloseCode.BAD_RESPONSE, f"Unexpected {msg_type.value} message")

        sub = self._subscriptions.get(message.id or "")
        if sub is None or sub.done:
            logger.debug(f"Ignoring {msg_type.value} for unknown subscription {message.id}")
            return

        codes = self.config.auth_error_codes
        if msg_type is MessageType.NEXT:
            try:
                result = GraphQLResponse.decode(message.payload)
            except InternalError as e:
                sub.deliver(_Signal.ERROR, e)
                return
            if result.has_errors:
                sub.deliver(_Signal.ERROR, normalize_errors(result.errors or [], codes))
            else:
                self.record.forbidden_closes = 0
                sub.deliver(_Signal.NEXT, result.data or {})
        elif msg_type is MessageType.ERROR:
            sub.server_active = False
            entries = message.payload if isinstance(message.payload, list) else []
            try:
                errors = [GraphQLErrorEntry.model_validate(entry) for entry in entries]
            except ValueError:
                errors = []
            sub.deliver(_Signal.ERROR, normalize_errors(errors, codes))
        else:
            sub.server_active = False
            sub.deliver(_Signal.COMPLETE)

    async def _send_subscribe(self, ws: Any, sub: _Subscription) -> None:
        await self._send(ws, GraphQLWSMessage.subscribe(sub.id, sub.operation.to_payload()))

    async def _send(self, ws: Any, message: GraphQLWSMessage) -> None:
        # The runner notices a dead socket on its next recv and reconnects
        with contextlib.suppress(ConnectionClosed):
            await ws.send(message.to_json())

    async def _close_quietly(self, ws: Any, code: int, reason: str) -> None:
        with contextlib.suppress(ConnectionClosed, OSError):
            await ws.close(code, reason)

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
