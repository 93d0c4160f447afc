"""Refresh Coordinator.

The single point through which both transports renew the credential.
Refreshes are coalesced by the CredentialProvider's refresh episode; this
module adds the failure policy: when the refresh itself fails, the session
is invalidated (forced logout) so the user goes back through the external
sign-in flow. That is the only recovery for a dead refresh grant.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from .credentials import Credential, CredentialProvider
from .errors import RefreshError, StaleRefreshError

logger = logging.getLogger(__name__)


class TransportKind(str, Enum):
    """Which transport asked for a refresh."""

    HTTP = "http"
    WEBSOCKET = "ws"


InvalidateCallback = Callable[[], Any]


class RefreshCoordinator:
    """Routes refresh requests and escalates refresh failures."""

    def __init__(
        self,
        provider: CredentialProvider,
        on_invalidate: InvalidateCallback | None = None,
    ) -> None:
        self._provider = provider
        self._on_invalidate = on_invalidate
        self._handled_episodes: set[str] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self.failures: list[tuple[TransportKind, RefreshError]] = []

    def set_invalidate_callback(self, callback: InvalidateCallback | None) -> None:
        self._on_invalidate = callback

    async def refresh(self, transport: TransportKind) -> Credential:
        """Force a refresh on behalf of ``transport``.

        Joins the in-flight refresh episode if there is one.

        Raises:
            StaleRefreshError: The session changed mid-refresh; nothing is invalidated
            RefreshError: After the failure handler has run
        """
        try:
            return await self._provider.refresh(force=True)
        except StaleRefreshError:
            logger.info(f"Discarded refresh result for {transport.value}: session changed")
            raise
        except RefreshError as e:
            self.on_refresh_failure(transport, e)
            raise

    def on_refresh_failure(self, transport: TransportKind, error: RefreshError) -> None:
        """Invalidate the session after a failed refresh.

        Runs once per failed episode, however many operations were waiting
        on it.
        """
        if isinstance(error, StaleRefreshError):
            return
        if error.episode_id is not None:
            if error.episode_id in self._handled_episodes:
                return
            self._handled_episodes.add(error.episode_id)

        self.failures.append((transport, error))
        logger.warning(f"Access token refresh failed via {transport.value}: {error}; ending session")

        if self._on_invalidate is None:
            return
        try:
            result = self._on_invalidate()
        except Exception:
            logger.exception("Session invalidation callback failed")
            return

        if inspect.isawaitable(result):
            # Fire-and-forget; keep a reference so the task is not collected
            task = asyncio.ensure_future(result)
            self._background.add(task)
            task.add_done_callback(self._invalidation_done)

    def _invalidation_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session invalidation failed: {task.exception()}")
