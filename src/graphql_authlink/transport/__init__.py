"""Transport layer.

Two transports share one credential:
- HTTP - queries and mutations, one request per attempt
- WebSocket - subscriptions over a persistent graphql-transport-ws connection
"""

from .http import HTTPTransport, RetryableResponseError
from .messages import (
    SUBPROTOCOL,
    CloseCode,
    GraphQLWSMessage,
    MessageType,
    is_fatal_close,
)
from .retry import RetryPolicy
from .websocket import ConnectionRecord, ConnectionState, WebSocketTransport

__all__ = [
    # HTTP
    "HTTPTransport",
    "RetryableResponseError",
    # WebSocket
    "WebSocketTransport",
    "ConnectionRecord",
    "ConnectionState",
    # Wire protocol
    "SUBPROTOCOL",
    "CloseCode",
    "GraphQLWSMessage",
    "MessageType",
    "is_fatal_close",
    # Backoff
    "RetryPolicy",
]
