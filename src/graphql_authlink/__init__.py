"""graphql-authlink - GraphQL client with transparent credential renewal.

Two transports behind one client:
- HTTP: queries and mutations, with network retry and refresh-on-UNAUTHENTICATED
- WebSocket: subscriptions over graphql-transport-ws, refresh before reconnect on 4403

Refreshes from both transports are coalesced into one upstream call. When the
refresh grant is dead the session is invalidated and the host's logout
callback runs.
"""

from .cache import FetchPolicy, ResultCache
from .client import GraphQLClient, create_client
from .config import ClientConfig
from .coordinator import RefreshCoordinator, TransportKind
from .credentials import (
    Credential,
    CredentialProvider,
    CredentialSource,
    RefreshEpisode,
    RefreshResult,
)
from .dispatcher import OperationDispatcher
from .errors import (
    ApplicationError,
    AuthError,
    GraphQLClientError,
    InternalError,
    NetworkError,
    RefreshError,
    StaleRefreshError,
)
from .operation import Operation, OperationContext, OperationKind
from .session import SessionLifecycle
from .sources import CallableCredentialSource, OAuthRefreshTokenSource

__all__ = [
    # Client
    "GraphQLClient",
    "create_client",
    "ClientConfig",
    # Operations
    "Operation",
    "OperationContext",
    "OperationKind",
    "OperationDispatcher",
    "FetchPolicy",
    "ResultCache",
    # Credentials
    "Credential",
    "CredentialProvider",
    "CredentialSource",
    "RefreshEpisode",
    "RefreshResult",
    "CallableCredentialSource",
    "OAuthRefreshTokenSource",
    "RefreshCoordinator",
    "TransportKind",
    "SessionLifecycle",
    # Errors
    "GraphQLClientError",
    "NetworkError",
    "AuthError",
    "ApplicationError",
    "InternalError",
    "RefreshError",
    "StaleRefreshError",
]

__version__ = "0.1.0"
