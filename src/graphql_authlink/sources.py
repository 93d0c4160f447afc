"""Credential sources.

A CredentialSource is the external collaborator that mints fresh access
tokens. Two implementations ship here:

- CallableCredentialSource: wraps a host-provided async callable returning
  ``{"refreshed": bool, "accessToken": str}``
- OAuthRefreshTokenSource: OAuth2 ``refresh_token`` grant over HTTP
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

import httpx
from pydantic import ValidationError

from .credentials import RefreshResult
from .errors import RefreshError

logger = logging.getLogger(__name__)

RefreshCallable = Callable[[bool], Awaitable[Mapping[str, Any] | RefreshResult]]


class CallableCredentialSource:
    """Adapt an async refresh function to the CredentialSource contract.

    Usage:
        async def refresh_access_token(force: bool) -> dict:
            return await host.call("refreshAccessToken", {"force": force})

        source = CallableCredentialSource(refresh_access_token)
    """

    def __init__(self, fn: RefreshCallable) -> None:
        self._fn = fn

    async def refresh(self, force: bool) -> RefreshResult:
        try:
            result = await self._fn(force)
        except RefreshError:
            raise
        except Exception as e:
            raise RefreshError(f"Refresh call failed: {e}") from e

        if isinstance(result, RefreshResult):
            return result
        try:
            return RefreshResult.model_validate(result)
        except ValidationError as e:
            raise RefreshError(f"Refresh call returned an invalid result: {e}") from e


class OAuthRefreshTokenSource:
    """OAuth2 refresh_token grant.

    Rotates the stored refresh token when the authorization server issues
    a new one. Any failure is terminal for the episode (RefreshError);
    re-authentication is left to the session invalidation path.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        refresh_token: str,
        client_secret: str | None = None,
        *,
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self._refresh_token = refresh_token
        self._timeout = timeout
        self._http_client = http_client

    @property
    def refresh_token(self) -> str:
        return self._refresh_token

    async def refresh(self, force: bool) -> RefreshResult:
        data = {
            "grant_type": "refresh_token",
            "refresh_token": self._refresh_token,
            "client_id": self.client_id,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        logger.debug(f"Refreshing OAuth2 token at {self.token_url}")
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self.token_url, data=data)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.token_url, data=data)
        except httpx.HTTPError as e:
            raise RefreshError(f"Token endpoint unreachable: {e}") from e

        if response.status_code >= 400:
            error = _error_description(response)
            logger.warning(f"OAuth2 token refresh rejected ({response.status_code}): {error}")
            raise RefreshError(f"Token refresh rejected: {error}")

        try:
            body = response.json()
        except ValueError as e:
            raise RefreshError("Token endpoint returned invalid JSON") from e

        access_token = body.get("access_token") if isinstance(body, dict) else None
        if not access_token:
            raise RefreshError("Token endpoint response has no access_token")

        if new_refresh_token := body.get("refresh_token"):
            self._refresh_token = new_refresh_token

        return RefreshResult(
            refreshed=True,
            access_token=access_token,
            expires_in=body.get("expires_in"),
        )


def _error_description(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error_description") or body.get("error") or body)
    return str(body)
