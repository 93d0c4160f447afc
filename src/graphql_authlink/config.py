"""Client configuration.

One backend origin, two transports:
- HTTP endpoint for queries and mutations
- WebSocket endpoint for subscriptions (graphql-transport-ws)

Values come from constructor defaults, from_origin(), or environment
variables via from_env().
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlsplit, urlunsplit

from .cache import FetchPolicy
from .transport.retry import RetryPolicy

ENV_PREFIX = "GRAPHQL_AUTHLINK_"


def to_websocket_url(url: str) -> str:
    """Swap an http(s) URL to its ws(s) equivalent."""
    parts = urlsplit(url)
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    return urlunsplit((scheme, parts.netloc, parts.path, parts.query, parts.fragment))


@dataclass
class ClientConfig:
    """Configuration for GraphQLClient and its transports."""

    # Endpoints
    url: str = "http://localhost:4000/graphql"
    ws_url: str | None = None  # Derived from url when not set
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)

    # Error codes meaning "the bearer credential was rejected"
    auth_error_codes: frozenset[str] = frozenset({"UNAUTHENTICATED"})

    # HTTP network retry
    retry_initial_delay: float = 0.3
    retry_multiplier: float = 2.0
    retry_max_attempts: int = 5
    retry_statuses: tuple[int, ...] = (502, 503, 504)

    # WebSocket reconnection
    ws_retry_attempts: int = 5
    ws_retry_delay: float = 1.0
    ws_retry_jitter: tuple[float, float] | None = (0.3, 3.0)
    connection_ack_timeout: float = 10.0

    default_fetch_policy: FetchPolicy = FetchPolicy.CACHE_FIRST

    @property
    def websocket_url(self) -> str:
        """WebSocket endpoint, derived from the HTTP endpoint if not configured."""
        return self.ws_url or to_websocket_url(self.url)

    def http_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_delay=self.retry_initial_delay,
            multiplier=self.retry_multiplier,
            max_attempts=self.retry_max_attempts,
        )

    def ws_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            initial_delay=self.ws_retry_delay,
            multiplier=2.0,
            max_attempts=self.ws_retry_attempts,
            jitter=self.ws_retry_jitter,
        )

    @classmethod
    def from_origin(cls, origin: str, **overrides: object) -> ClientConfig:
        """Build a config for a platform origin.

        Queries and mutations go to ``<origin>/graphql``, subscriptions to
        ``<ws-origin>/subscriptions``.

        Args:
            origin: Scheme and host, e.g. "https://platform.example.com"
            **overrides: Any other ClientConfig field
        """
        origin = origin.rstrip("/")
        return cls(
            url=f"{origin}/graphql",
            ws_url=f"{to_websocket_url(origin)}/subscriptions",
            **overrides,  # type: ignore[arg-type]
        )

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> ClientConfig:
        """Build a config from GRAPHQL_AUTHLINK_* environment variables.

        GRAPHQL_AUTHLINK_ORIGIN takes precedence over GRAPHQL_AUTHLINK_URL.
        """
        env = os.environ if environ is None else environ

        overrides: dict[str, object] = {}
        if timeout := env.get(f"{ENV_PREFIX}TIMEOUT"):
            overrides["timeout"] = float(timeout)
        if attempts := env.get(f"{ENV_PREFIX}RETRY_ATTEMPTS"):
            overrides["retry_max_attempts"] = int(attempts)

        origin = env.get(f"{ENV_PREFIX}ORIGIN")
        if origin:
            config = cls.from_origin(origin, **overrides)
        else:
            config = cls(**overrides)  # type: ignore[arg-type]
            if url := env.get(f"{ENV_PREFIX}URL"):
                config.url = url

        if ws_url := env.get(f"{ENV_PREFIX}WS_URL"):
            config.ws_url = ws_url
        return config
