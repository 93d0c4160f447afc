"""Operation and response types.

An Operation is one remote call (query, mutation or subscription). It is
immutable once dispatched; retries build a fresh OperationContext instead
of mutating the operation.

Responses are decoded into typed models at the transport boundary so the
rest of the code never inspects raw dictionaries:

    {"data": {...}, "errors": [{"message": "...", "extensions": {"code": "..."}}]}
"""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .errors import InternalError


class OperationKind(str, Enum):
    """GraphQL operation types."""

    QUERY = "query"
    MUTATION = "mutation"
    SUBSCRIPTION = "subscription"


# Comments, block strings, strings, braces and names - enough to find the
# top-level operation keyword without a full GraphQL parser.
_TOKEN_RE = re.compile(
    r'#[^\n\r]*|"""[\s\S]*?"""|"(?:\\.|[^"\\\n])*"|[{}]|[_A-Za-z][_0-9A-Za-z]*'
)


def detect_kind(document: str) -> OperationKind:
    """Return the kind of the first operation definition in a document.

    Fragment definitions are skipped. A document starting with a bare
    selection set (``{ viewer { id } }``) is a query.

    Raises:
        ValueError: If the document contains no operation definition
    """
    depth = 0
    in_fragment = False

    for match in _TOKEN_RE.finditer(document):
        token = match.group()
        if token.startswith(("#", '"')):
            continue

        if token == "{":
            if depth == 0 and not in_fragment:
                return OperationKind.QUERY
            depth += 1
        elif token == "}":
            depth -= 1
            if depth == 0:
                in_fragment = False
        elif depth == 0 and not in_fragment:
            if token == "fragment":
                in_fragment = True
            elif token in ("query", "mutation", "subscription"):
                return OperationKind(token)

    raise ValueError("Document does not contain an operation definition")


class Operation(BaseModel):
    """A single GraphQL operation.

    Example:
        op = Operation.create("query viewer { viewer { id } }")
        op.kind  # OperationKind.QUERY
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"op_{uuid.uuid4().hex[:12]}")
    query: str
    variables: dict[str, Any] = Field(default_factory=dict)
    operation_name: str | None = None
    kind: OperationKind = OperationKind.QUERY

    @model_validator(mode="before")
    @classmethod
    def _fill_kind(cls, values: Any) -> Any:
        if isinstance(values, dict) and values.get("kind") is None and "query" in values:
            values = {**values, "kind": detect_kind(values["query"])}
        return values

    @classmethod
    def create(
        cls,
        query: str,
        variables: Mapping[str, Any] | None = None,
        operation_name: str | None = None,
    ) -> Operation:
        """Factory method for creating operations."""
        return cls(
            query=query,
            variables=dict(variables or {}),
            operation_name=operation_name,
        )

    def to_payload(self) -> dict[str, Any]:
        """Wire body for both HTTP and graphql-ws subscribe messages."""
        payload: dict[str, Any] = {"query": self.query, "variables": self.variables}
        if self.operation_name:
            payload["operationName"] = self.operation_name
        return payload

    def cache_key(self) -> str:
        """Stable key for the result cache (ignores the operation id)."""
        return json.dumps(
            [self.query, self.operation_name, self.variables],
            sort_keys=True,
            default=str,
        )


AUTHORIZATION = "authorization"


@dataclass(frozen=True)
class OperationContext:
    """Per-attempt metadata attached to an operation.

    Each retry derives a new context; the old one is never mutated.
    """

    headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Header names are case-insensitive on the wire; keep them lowercase.
        normalized = {k.lower(): v for k, v in self.headers.items()}
        object.__setattr__(self, "headers", MappingProxyType(normalized))

    @property
    def authorization(self) -> str | None:
        return self.headers.get(AUTHORIZATION)

    @property
    def token(self) -> str | None:
        """Bearer token carried by this context, if any."""
        value = self.authorization
        if value and value.lower().startswith("bearer "):
            return value[7:]
        return None

    def with_authorization(self, token: str) -> OperationContext:
        """Derive a context whose authorization header carries ``token``."""
        return OperationContext({**self.headers, AUTHORIZATION: f"Bearer {token}"})

    def without_authorization(self) -> OperationContext:
        headers = {k: v for k, v in self.headers.items() if k != AUTHORIZATION}
        return OperationContext(headers)


class GraphQLErrorEntry(BaseModel):
    """One entry of a GraphQL ``errors`` list."""

    model_config = ConfigDict(extra="allow")

    message: str = ""
    extensions: dict[str, Any] = Field(default_factory=dict)
    path: list[str | int] | None = None

    @property
    def code(self) -> str | None:
        code = self.extensions.get("code")
        return str(code) if code is not None else None


class GraphQLResponse(BaseModel):
    """A decoded GraphQL response payload."""

    model_config = ConfigDict(extra="allow")

    data: dict[str, Any] | None = None
    errors: list[GraphQLErrorEntry] | None = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def first_error_code(self) -> str | None:
        if not self.errors:
            return None
        return self.errors[0].code

    def has_error_code(self, codes: frozenset[str] | set[str]) -> bool:
        """Check whether any error entry carries one of ``codes``."""
        return any(entry.code in codes for entry in self.errors or [])

    @classmethod
    def decode(cls, payload: Any) -> GraphQLResponse:
        """Decode a raw JSON payload.

        Raises:
            InternalError: If the payload is not a GraphQL response
        """
        if not isinstance(payload, dict) or ("data" not in payload and "errors" not in payload):
            raise InternalError(details=payload)
        try:
            return cls.model_validate(payload)
        except ValidationError as e:
            raise InternalError(details=e) from e
