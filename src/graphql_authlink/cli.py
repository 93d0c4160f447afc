"""graphql-authlink CLI.

Run GraphQL operations against a backend with automatic token renewal.

Usage:
    graphql-authlink --origin https://platform.example.com --token $TOKEN query '{ viewer { id } }'
    graphql-authlink query @viewer.graphql --var id=42
    graphql-authlink subscribe 'subscription { recordChanged { id } }' --limit 5
    graphql-authlink config                      # Show effective configuration

Token renewal uses the OAuth2 refresh_token grant when --token-url,
--client-id and --refresh-token are given; otherwise an expired token ends
the session with an UNAUTHENTICATED error.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sys
from dataclasses import asdict
from typing import Any

import click

from .client import GraphQLClient
from .config import ClientConfig
from .credentials import Credential, CredentialSource, RefreshResult
from .errors import GraphQLClientError, RefreshError
from .sources import CallableCredentialSource, OAuthRefreshTokenSource

LOG_LEVELS = ["debug", "info", "warning", "error"]


def parse_variables(pairs: tuple[str, ...], variables_json: str | None) -> dict[str, Any]:
    """Merge --variables JSON with --var key=value pairs (pairs win).

    Values that parse as JSON are used as such, anything else is a string.
    """
    variables: dict[str, Any] = {}
    if variables_json:
        try:
            parsed = json.loads(variables_json)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"Invalid JSON: {e}", param_hint="--variables") from e
        if not isinstance(parsed, dict):
            raise click.BadParameter("Must be a JSON object", param_hint="--variables")
        variables.update(parsed)

    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"Expected key=value, got {pair!r}", param_hint="--var")
        try:
            variables[key] = json.loads(raw)
        except json.JSONDecodeError:
            variables[key] = raw
    return variables


def read_document(document: str) -> str:
    """Resolve '-' (stdin) and '@path' document arguments."""
    if document == "-":
        return sys.stdin.read()
    if document.startswith("@"):
        path = document[1:]
        try:
            with open(path, encoding="utf-8") as f:
                return f.read()
        except OSError as e:
            raise click.BadParameter(f"Cannot read {path}: {e}", param_hint="DOCUMENT") from e
    return document


async def _no_refresh(force: bool) -> RefreshResult:
    raise RefreshError("No refresh credentials configured")


def build_source(
    token_url: str | None,
    client_id: str | None,
    refresh_token: str | None,
    client_secret: str | None,
) -> CredentialSource:
    if token_url and client_id and refresh_token:
        return OAuthRefreshTokenSource(token_url, client_id, refresh_token, client_secret)
    return CallableCredentialSource(_no_refresh)


def _dump(data: Any, compact: bool) -> str:
    if compact:
        return json.dumps(data, ensure_ascii=False, default=str)
    return json.dumps(data, indent=2, ensure_ascii=False, default=str)


def _fail(error: GraphQLClientError) -> None:
    click.echo(f"{error.code}: {error.message}", err=True)
    sys.exit(1)


@click.group()
@click.option("--origin", envvar="GRAPHQL_AUTHLINK_ORIGIN", help="Platform origin (sets both endpoints)")
@click.option("--url", envvar="GRAPHQL_AUTHLINK_URL", help="HTTP GraphQL endpoint")
@click.option("--ws-url", envvar="GRAPHQL_AUTHLINK_WS_URL", help="WebSocket endpoint for subscriptions")
@click.option("--token", envvar="GRAPHQL_AUTHLINK_TOKEN", help="Access token to start with")
@click.option("--token-url", envvar="GRAPHQL_AUTHLINK_TOKEN_URL", help="OAuth2 token endpoint")
@click.option("--client-id", envvar="GRAPHQL_AUTHLINK_CLIENT_ID", help="OAuth2 client id")
@click.option("--client-secret", envvar="GRAPHQL_AUTHLINK_CLIENT_SECRET", help="OAuth2 client secret")
@click.option("--refresh-token", envvar="GRAPHQL_AUTHLINK_REFRESH_TOKEN", help="OAuth2 refresh token")
@click.option("--timeout", type=float, default=None, help="Request timeout in seconds")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="warning",
    show_default=True,
    help="Log verbosity (logs go to stderr)",
)
@click.pass_context
def main(
    ctx: click.Context,
    origin: str | None,
    url: str | None,
    ws_url: str | None,
    token: str | None,
    token_url: str | None,
    client_id: str | None,
    client_secret: str | None,
    refresh_token: str | None,
    timeout: float | None,
    log_level: str,
) -> None:
    """Run GraphQL operations with transparent access token renewal."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(levelname)s: %(name)s: %(message)s",
        stream=sys.stderr,
    )

    config = ClientConfig.from_origin(origin) if origin else ClientConfig.from_env()
    if url:
        config.url = url
    if ws_url:
        config.ws_url = ws_url
    if timeout is not None:
        config.timeout = timeout

    ctx.obj = {
        "config": config,
        "token": token,
        "source": build_source(token_url, client_id, refresh_token, client_secret),
    }


def _make_client(obj: dict[str, Any]) -> GraphQLClient:
    token = obj["token"]
    return GraphQLClient(
        obj["config"],
        obj["source"],
        credential=Credential(access_token=token) if token else None,
    )


@main.command()
@click.argument("document")
@click.option("--var", "pairs", multiple=True, help="Variable as key=value (repeatable)")
@click.option("--variables", "variables_json", help="Variables as a JSON object")
@click.option("--operation-name", help="Operation to run in a multi-operation document")
@click.option("--compact", is_flag=True, help="Single-line JSON output")
@click.pass_obj
def query(
    obj: dict[str, Any],
    document: str,
    pairs: tuple[str, ...],
    variables_json: str | None,
    operation_name: str | None,
    compact: bool,
) -> None:
    """Execute a query or mutation and print its data.

    DOCUMENT is a GraphQL document, @path to read it from a file, or - for stdin.

    Examples:

        graphql-authlink query '{ viewer { id } }'

        graphql-authlink query @update.graphql --var id=42 --var name='"New"'
    """
    text = read_document(document)
    variables = parse_variables(pairs, variables_json)

    async def run() -> dict[str, Any]:
        async with _make_client(obj) as client:
            return await client.execute(text, variables, operation_name=operation_name)

    try:
        data = asyncio.run(run())
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    except GraphQLClientError as e:
        _fail(e)
        return
    click.echo(_dump(data, compact))


@main.command()
@click.argument("document")
@click.option("--var", "pairs", multiple=True, help="Variable as key=value (repeatable)")
@click.option("--variables", "variables_json", help="Variables as a JSON object")
@click.option("--operation-name", help="Operation to run in a multi-operation document")
@click.option("--limit", "-n", type=int, default=None, help="Stop after N results")
@click.pass_obj
def subscribe(
    obj: dict[str, Any],
    document: str,
    pairs: tuple[str, ...],
    variables_json: str | None,
    operation_name: str | None,
    limit: int | None,
) -> None:
    """Subscribe and print each result as one line of JSON.

    Runs until the server completes the subscription, --limit is reached
    or Ctrl+C.
    """
    text = read_document(document)
    variables = parse_variables(pairs, variables_json)

    async def run() -> None:
        count = 0
        async with _make_client(obj) as client:
            stream = client.subscribe(text, variables, operation_name=operation_name)
            async with contextlib.aclosing(stream):
                async for data in stream:
                    click.echo(_dump(data, compact=True))
                    count += 1
                    if limit is not None and count >= limit:
                        break

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        click.echo("\nSubscription stopped", err=True)
    except ValueError as e:
        raise click.UsageError(str(e)) from e
    except GraphQLClientError as e:
        _fail(e)


@main.command("config")
@click.pass_obj
def show_config(obj: dict[str, Any]) -> None:
    """Show the effective client configuration."""
    config: ClientConfig = obj["config"]
    data = asdict(config)
    data["ws_url"] = config.websocket_url
    data["auth_error_codes"] = sorted(config.auth_error_codes)
    data["token"] = "set" if obj["token"] else "not set"
    data["refresh"] = (
        "oauth2" if isinstance(obj["source"], OAuthRefreshTokenSource) else "disabled"
    )
    click.echo(_dump(data, compact=False))


if __name__ == "__main__":
    main()
