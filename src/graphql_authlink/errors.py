"""Error taxonomy surfaced to callers.

Every failed operation surfaces exactly one of:
- NetworkError: the server could not be reached within the retry budget
- AuthError: the credential was rejected and could not be renewed
- ApplicationError: a well-formed response carrying a non-auth error code
- InternalError: a malformed or unexpected response

RefreshError is internal: the credential provider raises it, the transports
translate it to AuthError.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence
from typing import TYPE_CHECKING, Any

import httpx

if TYPE_CHECKING:
    from .operation import GraphQLErrorEntry

UNAUTHENTICATED = "UNAUTHENTICATED"
NETWORK_ERROR = "NETWORK_ERROR"
INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


class GraphQLClientError(Exception):
    """Base class for every error a caller can receive."""

    default_code = INTERNAL_SERVER_ERROR
    default_message = "There was an internal error. Please try again."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        details: Any = None,
    ) -> None:
        self.code = code or self.default_code
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


class NetworkError(GraphQLClientError):
    """Connection to the server could not be completed."""

    default_code = NETWORK_ERROR
    default_message = "Couldn't connect to the server. Please try again."


class AuthError(GraphQLClientError):
    """The credential is invalid and could not be refreshed."""

    default_code = UNAUTHENTICATED
    default_message = "Your session has expired. Please sign in again."


class ApplicationError(GraphQLClientError):
    """A non-auth application error returned by the server."""


class InternalError(GraphQLClientError):
    """The server response had an unexpected shape."""


class RefreshError(Exception):
    """The upstream credential refresh failed.

    Terminal for the refresh episode that raised it; never retried.
    """

    def __init__(self, message: str, *, episode_id: str | None = None) -> None:
        super().__init__(message)
        self.episode_id = episode_id


class StaleRefreshError(RefreshError):
    """The session changed while the refresh was in flight.

    The refreshed token is discarded. The session now in place is a
    different one, so this never invalidates it.
    """


def normalize_errors(
    errors: Sequence[GraphQLErrorEntry],
    auth_codes: Collection[str] = (UNAUTHENTICATED,),
) -> GraphQLClientError:
    """Convert a GraphQL error list into a single caller-facing error.

    Only the first entry is considered.
    """
    if not errors:
        return InternalError()

    first = errors[0]
    code = first.code
    if code is None:
        return ApplicationError(first.message or None, code=INTERNAL_SERVER_ERROR, details=first)
    if code in auth_codes:
        return AuthError(first.message or None, code=code, details=first)
    return ApplicationError(first.message or None, code=code, details=first)


def normalize_exception(exc: BaseException) -> GraphQLClientError:
    """Map any exception raised while running an operation onto the taxonomy."""
    if isinstance(exc, GraphQLClientError):
        return exc
    if isinstance(exc, httpx.TransportError):
        return NetworkError(details=exc)
    if isinstance(exc, RefreshError):
        return AuthError(details=exc)
    return InternalError(details=exc)
