"""graphql-transport-ws wire protocol.

Message flow for one connection:

    client: connection_init {payload: {authorization: "Bearer <token>"}}
    server: connection_ack
    client: subscribe {id, payload: {query, variables}}
    server: next {id, payload: {data}} ... complete {id}

Either side may send ping/pong at any time. The server rejects a credential
by closing the socket with 4403 Forbidden.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any

SUBPROTOCOL = "graphql-transport-ws"


class MessageType(str, Enum):
    """graphql-transport-ws message types."""

    # Client -> Server
    CONNECTION_INIT = "connection_init"
    SUBSCRIBE = "subscribe"

    # Server -> Client
    CONNECTION_ACK = "connection_ack"
    NEXT = "next"
    ERROR = "error"

    # Both directions
    PING = "ping"
    PONG = "pong"
    COMPLETE = "complete"


class CloseCode(IntEnum):
    """WebSocket close codes used by graphql-transport-ws."""

    NORMAL = 1000
    GOING_AWAY = 1001
    ABNORMAL = 1006
    INTERNAL_SERVER_ERROR = 4500
    INTERNAL_CLIENT_ERROR = 4005
    BAD_REQUEST = 4400
    BAD_RESPONSE = 4004
    UNAUTHORIZED = 4401  # Subscribe before connection_ack
    FORBIDDEN = 4403  # Credential rejected
    SUBPROTOCOL_NOT_ACCEPTABLE = 4406
    CONNECTION_INITIALISATION_TIMEOUT = 4408
    CONNECTION_ACKNOWLEDGEMENT_TIMEOUT = 4504
    SUBSCRIBER_ALREADY_EXISTS = 4409
    TOO_MANY_INITIALISATION_REQUESTS = 4429


# Close codes after which reconnecting cannot help.
FATAL_CLOSE_CODES = frozenset(
    {
        CloseCode.INTERNAL_SERVER_ERROR,
        CloseCode.INTERNAL_CLIENT_ERROR,
        CloseCode.BAD_REQUEST,
        CloseCode.BAD_RESPONSE,
        CloseCode.UNAUTHORIZED,
        CloseCode.SUBPROTOCOL_NOT_ACCEPTABLE,
        CloseCode.SUBSCRIBER_ALREADY_EXISTS,
        CloseCode.TOO_MANY_INITIALISATION_REQUESTS,
    }
)

# 1xxx codes that are ordinary disconnects rather than protocol faults.
_RECOVERABLE_STANDARD_CODES = frozenset({1000, 1001, 1005, 1006, 1012, 1013, 1014})


def is_fatal_close(code: int) -> bool:
    """Check whether a close code terminates the connection for good."""
    if code in FATAL_CLOSE_CODES:
        return True
    return 1000 <= code <= 1999 and code not in _RECOVERABLE_STANDARD_CODES


@dataclass
class GraphQLWSMessage:
    """A graphql-transport-ws protocol message."""

    type: MessageType
    id: str | None = None
    payload: Any = None

    def to_json(self) -> str:
        """Serialize to JSON."""
        data: dict[str, Any] = {"type": self.type.value}
        if self.id is not None:
            data["id"] = self.id
        if self.payload is not None:
            data["payload"] = self.payload
        return json.dumps(data)

    @classmethod
    def from_json(cls, data: str | bytes) -> GraphQLWSMessage:
        """Deserialize from JSON.

        Raises:
            ValueError: On invalid JSON or an unknown message type
        """
        parsed = json.loads(data)
        if not isinstance(parsed, dict):
            raise ValueError(f"Expected a JSON object, got {type(parsed).__name__}")
        return cls(
            type=MessageType(parsed.get("type")),
            id=parsed.get("id"),
            payload=parsed.get("payload"),
        )

    @classmethod
    def connection_init(cls, payload: dict[str, Any]) -> GraphQLWSMessage:
        return cls(type=MessageType.CONNECTION_INIT, payload=payload)

    @classmethod
    def subscribe(cls, subscription_id: str, payload: dict[str, Any]) -> GraphQLWSMessage:
        return cls(type=MessageType.SUBSCRIBE, id=subscription_id, payload=payload)

    @classmethod
    def complete(cls, subscription_id: str) -> GraphQLWSMessage:
        return cls(type=MessageType.COMPLETE, id=subscription_id)

    @classmethod
    def pong(cls, payload: Any = None) -> GraphQLWSMessage:
        return cls(type=MessageType.PONG, payload=payload)
