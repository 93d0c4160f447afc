"""Credential Provider.

Holds the current bearer credential and renews it through a CredentialSource.

Refreshes are coalesced: the first caller that needs a refresh creates a
RefreshEpisode (a shared task); every caller arriving while it is in flight
awaits the same episode and receives the same outcome. At most one upstream
refresh call is ever outstanding.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime, timedelta
from typing import Protocol, runtime_checkable

from pydantic import BaseModel, ConfigDict, Field

from .errors import RefreshError, StaleRefreshError

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    """An opaque bearer token with an optional expiry."""

    model_config = ConfigDict(frozen=True)

    access_token: str
    expires_at: datetime | None = None

    def is_expired(self, leeway: float = 0.0, now: datetime | None = None) -> bool:
        """Check expiry. A credential without expires_at never expires locally."""
        if self.expires_at is None:
            return False
        now = now or datetime.now(UTC)
        return self.expires_at - timedelta(seconds=leeway) <= now

    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"

    def __repr__(self) -> str:
        # Keep tokens out of logs and tracebacks
        return f"Credential(access_token='***', expires_at={self.expires_at!r})"

    __str__ = __repr__


class RefreshResult(BaseModel):
    """Outcome of an upstream refresh call: ``{refreshed, accessToken}``."""

    model_config = ConfigDict(populate_by_name=True)

    refreshed: bool = True
    access_token: str = Field(alias="accessToken")
    expires_in: float | None = Field(default=None, alias="expiresIn")


@runtime_checkable
class CredentialSource(Protocol):
    """External collaborator that issues fresh access tokens."""

    async def refresh(self, force: bool) -> RefreshResult:
        """Obtain a new access token.

        Raises:
            RefreshError: If the refresh grant is no longer usable
        """
        ...


class RefreshEpisode:
    """A single in-flight credential refresh shared by all its waiters."""

    def __init__(self, episode_id: str, task: asyncio.Task[Credential]) -> None:
        self.id = episode_id
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> Credential:
        # shield: a cancelled waiter must not cancel the refresh for everyone
        return await asyncio.shield(self._task)


class CredentialProvider:
    """Owns the current Credential.

    Transports read it per attempt via current(); only a refresh episode or
    the session lifecycle writes it.
    """

    def __init__(self, source: CredentialSource, credential: Credential | None = None) -> None:
        self._source = source
        self._credential = credential
        self._episode: RefreshEpisode | None = None
        self._generation = 0
        self.refresh_count = 0

    def current(self) -> Credential | None:
        return self._credential

    def set(self, credential: Credential | None) -> None:
        """Replace the credential (login, account switch)."""
        self._credential = credential
        self._generation += 1

    def clear(self) -> None:
        """Drop the credential (logout). A refresh still in flight will not write back."""
        self.set(None)

    @property
    def episode(self) -> RefreshEpisode | None:
        """The refresh currently in flight, if any."""
        return self._episode

    async def refresh(self, force: bool = True) -> Credential:
        """Refresh the credential, joining any refresh already in flight.

        Args:
            force: When False, a current unexpired credential is returned as is

        Raises:
            RefreshError: If the upstream refresh fails
        """
        if not force and self._credential is not None and not self._credential.is_expired():
            return self._credential

        episode = self._episode
        if episode is None:
            episode_id = f"refresh_{uuid.uuid4().hex[:12]}"
            task = asyncio.create_task(self._run_refresh(episode_id, self._generation))
            episode = RefreshEpisode(episode_id, task)
            self._episode = episode
            task.add_done_callback(lambda t, ep=episode: self._end_episode(ep, t))
            logger.debug(f"Started credential refresh {episode.id}")
        else:
            logger.debug(f"Joining credential refresh {episode.id}")

        return await episode.wait()

    def _end_episode(self, episode: RefreshEpisode, task: asyncio.Task[Credential]) -> None:
        if self._episode is episode:
            self._episode = None
        if not task.cancelled():
            # Mark the outcome retrieved even if every waiter was cancelled
            task.exception()

    async def _run_refresh(self, episode_id: str, generation: int) -> Credential:
        self.refresh_count += 1
        try:
            result = await self._source.refresh(True)
        except Exception as e:
            if generation != self._generation:
                raise StaleRefreshError(
                    "Session changed during credential refresh", episode_id=episode_id
                ) from e
            if isinstance(e, RefreshError):
                e.episode_id = episode_id
                raise
            raise RefreshError(f"Credential refresh failed: {e}", episode_id=episode_id) from e

        if generation != self._generation:
            # Identity changed while we were waiting; this token belongs to nobody
            raise StaleRefreshError("Session changed during credential refresh", episode_id=episode_id)

        if not result.access_token:
            raise RefreshError("Credential refresh returned no access token", episode_id=episode_id)

        expires_at = None
        if result.expires_in is not None:
            expires_at = datetime.now(UTC) + timedelta(seconds=result.expires_in)

        credential = Credential(access_token=result.access_token, expires_at=expires_at)
        self._credential = credential
        logger.info(f"Access token refreshed (refreshed={result.refreshed})")
        return credential
