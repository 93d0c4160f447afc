"""Unit tests for the HTTP transport.

Covers the request pipeline end to end against a MockTransport backend:
- Credential attachment per attempt
- Refresh on UNAUTHENTICATED and a single re-transmission
- Network retry with exponential backoff
- Refresh coalescing across concurrent operations
- Session invalidation when the refresh fails
- Error normalization
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import httpx
import pytest

from graphql_authlink.credentials import Credential
from graphql_authlink.errors import (
    ApplicationError,
    AuthError,
    InternalError,
    NetworkError,
    RefreshError,
)
from graphql_authlink.operation import Operation

VIEWER = "query Viewer { viewer { id } }"


# =============================================================================
# Credential attachment
# =============================================================================


class TestCredentialAttachment:
    """Tests for the Authorization header."""

    @pytest.mark.asyncio
    async def test_attaches_current_credential(self, make_client, backend) -> None:
        """Requests carry the provider's current bearer token."""
        async with make_client(token="T1") as client:
            data = await client.execute(VIEWER)

        assert data == {"viewer": {"id": "user-1"}}
        assert backend.authorizations == ["Bearer T1"]

    @pytest.mark.asyncio
    async def test_no_credential_means_no_header(self, make_client, backend) -> None:
        """Without a credential the request goes out unauthenticated."""
        backend.require_auth = False

        async with make_client(token=None) as client:
            await client.execute(VIEWER)

        assert "authorization" not in backend.requests[0].headers

    @pytest.mark.asyncio
    async def test_sends_query_and_variables(self, make_client, backend) -> None:
        """Body is the standard GraphQL POST payload."""
        async with make_client() as client:
            await client.execute(
                "query User($id: ID!) { user(id: $id) { id } }",
                {"id": "42"},
                operation_name="User",
            )

        body = backend.bodies()[0]
        assert body["variables"] == {"id": "42"}
        assert body["operationName"] == "User"
        assert body["query"].startswith("query User")

    @pytest.mark.asyncio
    async def test_static_headers_are_sent(self, make_client, backend) -> None:
        """Configured headers go out alongside the credential."""
        async with make_client(headers={"X-Client": "tests"}) as client:
            await client.execute(VIEWER)

        assert backend.requests[0].headers["x-client"] == "tests"
        assert backend.requests[0].headers["authorization"] == "Bearer T1"


# =============================================================================
# Auth failure recovery
# =============================================================================


class TestAuthRecovery:
    """Tests for refresh on UNAUTHENTICATED."""

    @pytest.mark.asyncio
    async def test_unauthenticated_refreshes_and_retransmits(
        self, make_client, backend, source
    ) -> None:
        """An expired token is refreshed and the operation resent with the new one."""
        backend.valid_tokens = {"T2"}

        async with make_client(token="T1") as client:
            data = await client.execute(VIEWER)
            current = client.credentials.current()

        assert data == {"viewer": {"id": "user-1"}}
        assert backend.authorizations == ["Bearer T1", "Bearer T2"]
        assert source.calls == 1
        assert current is not None and current.access_token == "T2"

    @pytest.mark.asyncio
    async def test_second_rejection_is_surfaced(self, make_client, backend, source) -> None:
        """A token rejected right after refresh surfaces AuthError; no second refresh."""
        backend.valid_tokens = set()
        logout = MagicMock()

        async with make_client(logout=logout) as client:
            with pytest.raises(AuthError) as exc_info:
                await client.execute(VIEWER)

        assert exc_info.value.code == "UNAUTHENTICATED"
        assert len(backend.requests) == 2
        assert source.calls == 1
        logout.assert_not_called()

    @pytest.mark.asyncio
    async def test_concurrent_rejections_share_one_refresh(
        self, make_client, backend, source
    ) -> None:
        """Operations failing together wait on the same refresh."""
        backend.valid_tokens = {"T2"}
        source.delay = 0.05

        async with make_client(token="T1") as client:
            results = await asyncio.gather(
                *(client.execute(VIEWER, fetch_policy="network-only") for _ in range(3))
            )

        assert source.calls == 1
        assert all(result == {"viewer": {"id": "user-1"}} for result in results)
        assert backend.authorizations.count("Bearer T2") == 3

    @pytest.mark.asyncio
    async def test_refresh_failure_invalidates_session(
        self, make_client, backend, source
    ) -> None:
        """A dead refresh grant forces logout and surfaces AuthError."""
        backend.valid_tokens = set()
        source.error = RefreshError("refresh token revoked")
        logout = MagicMock()

        async with make_client(logout=logout) as client:
            with pytest.raises(AuthError):
                await client.execute(VIEWER)

            assert client.session.identity is None
            assert client.credentials.current() is None

        logout.assert_called_once()
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_concurrent_refresh_failure_invalidates_once(
        self, make_client, backend, source
    ) -> None:
        """Every waiter fails, but the session is invalidated once."""
        backend.valid_tokens = set()
        source.error = RefreshError("refresh token revoked")
        source.delay = 0.05
        logout = MagicMock()

        async with make_client(logout=logout) as client:
            results = await asyncio.gather(
                *(client.execute(VIEWER, fetch_policy="network-only") for _ in range(3)),
                return_exceptions=True,
            )
            failures = list(client.coordinator.failures)

        assert all(isinstance(result, AuthError) for result in results)
        assert source.calls == 1
        assert len(failures) == 1
        logout.assert_called_once()

    @pytest.mark.asyncio
    async def test_account_switch_during_refresh_keeps_new_session(
        self, make_client, backend, source, wait_until
    ) -> None:
        """A refresh overtaken by an account switch fails the old operation only."""
        backend.valid_tokens = {"U2"}
        source.delay = 0.05
        logout = MagicMock()

        async with make_client(token="T1", identity="user-1", logout=logout) as client:
            pending = asyncio.create_task(client.execute(VIEWER))
            await wait_until(lambda: source.calls == 1)

            client.session.switch_account("user-2", Credential(access_token="U2"))

            with pytest.raises(AuthError):
                await pending

            assert client.session.identity == "user-2"
            assert client.credentials.current().access_token == "U2"
            assert client.coordinator.failures == []

            data = await client.execute(VIEWER)

        logout.assert_not_called()
        assert data == {"viewer": {"id": "user-1"}}
        assert backend.authorizations == ["Bearer T1", "Bearer U2"]

    @pytest.mark.asyncio
    async def test_custom_auth_error_code(self, make_client, backend, source) -> None:
        """Configured auth codes trigger the same recovery."""
        backend.responses = [
            httpx.Response(
                200,
                json={"errors": [{"message": "Expired", "extensions": {"code": "TOKEN_EXPIRED"}}]},
            )
        ]
        backend.valid_tokens = {"T2"}

        async with make_client(auth_error_codes=frozenset({"TOKEN_EXPIRED"})) as client:
            await client.execute(VIEWER)

        assert source.calls == 1
        assert backend.authorizations == ["Bearer T1", "Bearer T2"]


# =============================================================================
# Network retry
# =============================================================================


class TestNetworkRetry:
    """Tests for connection failure handling."""

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_network_error(
        self, make_client, backend, source, sleep
    ) -> None:
        """Five failed attempts with growing delays, then NetworkError."""
        backend.network_failures = 10

        async with make_client() as client:
            with pytest.raises(NetworkError) as exc_info:
                await client.execute(VIEWER)

        assert exc_info.value.code == "NETWORK_ERROR"
        assert exc_info.value.message == "Couldn't connect to the server. Please try again."
        assert len(backend.requests) == 5
        assert sleep.delays == pytest.approx([0.3, 0.6, 1.2, 2.4])
        assert source.calls == 0

    @pytest.mark.asyncio
    async def test_recovers_after_transient_failures(self, make_client, backend, sleep) -> None:
        """The operation succeeds once the server is reachable again."""
        backend.network_failures = 2

        async with make_client() as client:
            data = await client.execute(VIEWER)

        assert data == {"viewer": {"id": "user-1"}}
        assert sleep.delays == pytest.approx([0.3, 0.6])

    @pytest.mark.asyncio
    async def test_gateway_status_is_retried(self, make_client, backend, sleep) -> None:
        """A 503 from a gateway counts as a connection failure."""
        backend.responses = [httpx.Response(503, text="Service Unavailable")]

        async with make_client() as client:
            data = await client.execute(VIEWER)

        assert data == {"viewer": {"id": "user-1"}}
        assert len(backend.requests) == 2
        assert sleep.delays == pytest.approx([0.3])

    @pytest.mark.asyncio
    async def test_retry_attempts_configurable(self, make_client, backend, sleep) -> None:
        """retry_max_attempts bounds the number of transmissions."""
        backend.network_failures = 10

        async with make_client(retry_max_attempts=2) as client:
            with pytest.raises(NetworkError):
                await client.execute(VIEWER)

        assert len(backend.requests) == 2
        assert sleep.delays == pytest.approx([0.3])


# =============================================================================
# Response handling
# =============================================================================


class TestResponseErrors:
    """Tests for error normalization of completed responses."""

    @pytest.mark.asyncio
    async def test_first_application_error_is_raised(self, make_client, backend) -> None:
        """Only the first error entry is normalized."""
        backend.responses = [
            httpx.Response(
                200,
                json={
                    "data": None,
                    "errors": [
                        {"message": "Record not found", "extensions": {"code": "NOT_FOUND"}},
                        {"message": "Also bad", "extensions": {"code": "BAD_USER_INPUT"}},
                    ],
                },
            )
        ]

        async with make_client() as client:
            with pytest.raises(ApplicationError) as exc_info:
                await client.execute(VIEWER)

        assert exc_info.value.code == "NOT_FOUND"
        assert exc_info.value.message == "Record not found"

    @pytest.mark.asyncio
    async def test_error_without_code(self, make_client, backend) -> None:
        """An error entry without a code is an internal server error."""
        backend.responses = [httpx.Response(200, json={"errors": [{"message": "boom"}]})]

        async with make_client() as client:
            with pytest.raises(ApplicationError) as exc_info:
                await client.execute(VIEWER)

        assert exc_info.value.code == "INTERNAL_SERVER_ERROR"

    @pytest.mark.asyncio
    async def test_non_json_response(self, make_client, backend) -> None:
        """An HTML error page is an InternalError, not retried."""
        backend.responses = [httpx.Response(500, text="<html>Oops</html>")]

        async with make_client() as client:
            with pytest.raises(InternalError):
                await client.execute(VIEWER)

        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_missing_data(self, make_client, backend) -> None:
        """A response with neither data nor errors is malformed."""
        backend.responses = [httpx.Response(200, json={"data": None})]

        async with make_client() as client:
            with pytest.raises(InternalError):
                await client.execute(VIEWER)

    @pytest.mark.asyncio
    async def test_subscription_rejected(self, make_client) -> None:
        """Subscriptions never travel over HTTP."""
        op = Operation.create("subscription { recordChanged { id } }")

        async with make_client() as client:
            with pytest.raises(ValueError):
                await client.http.execute(op)
