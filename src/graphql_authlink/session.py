"""Session Lifecycle Hook.

Tracks the logged-in identity and resets transport-local state whenever it
changes (login, logout, account switch, forced logout after a dead refresh
grant). Reset hooks run synchronously inside the identity change, so any
operation started after the change returns can only see post-change state.

Usage:
    session = SessionLifecycle(provider, logout=host_logout)
    session.add_reset_hook(cache.clear)
    session.login("user-1", Credential(access_token="..."))
    session.switch_account("user-2", Credential(access_token="..."))
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from .credentials import Credential, CredentialProvider

logger = logging.getLogger(__name__)

ResetHook = Callable[[], None]


class SessionLifecycle:
    """Reacts to Session Identity changes."""

    def __init__(
        self,
        provider: CredentialProvider,
        logout: Callable[[], Any] | None = None,
        identity: str | None = None,
    ) -> None:
        self._provider = provider
        self._logout = logout
        self._identity = identity
        self._generation = 0
        self._hooks: list[ResetHook] = []
        self._background: set[asyncio.Future[Any]] = set()

    @property
    def identity(self) -> str | None:
        return self._identity

    @property
    def generation(self) -> int:
        """Increments on every identity change."""
        return self._generation

    @property
    def is_authenticated(self) -> bool:
        return self._identity is not None and self._provider.current() is not None

    def add_reset_hook(self, hook: ResetHook) -> Callable[[], None]:
        """Register a synchronous callback run on every identity change.

        Returns:
            Unsubscribe function
        """
        self._hooks.append(hook)

        def unsubscribe() -> None:
            if hook in self._hooks:
                self._hooks.remove(hook)

        return unsubscribe

    def login(self, identity: str, credential: Credential) -> None:
        """Start a session for ``identity``."""
        self._provider.set(credential)
        self._change_identity(identity)

    def switch_account(self, identity: str, credential: Credential) -> None:
        self.login(identity, credential)

    def logout(self) -> None:
        """End the session and destroy the credential."""
        had_credential = self._provider.current() is not None
        self._provider.clear()
        # An anonymous session that held a token still cached data under it
        self._change_identity(None, force=had_credential)

    def on_identity_changed(self, identity: str | None) -> None:
        """Notify an identity change observed outside this client."""
        if identity is None:
            self._provider.clear()
        self._change_identity(identity)

    def invalidate(self) -> None:
        """Force logout after the credential could not be renewed.

        Fires the external logout collaborator (fire-and-forget), then ends
        the local session.
        """
        logger.warning(f"Invalidating session for identity {self._identity!r}")
        if self._logout is not None:
            try:
                result = self._logout()
            except Exception:
                logger.exception("External logout call failed")
            else:
                if inspect.isawaitable(result):
                    future = asyncio.ensure_future(result)
                    self._background.add(future)
                    future.add_done_callback(self._logout_done)
        self.logout()

    def _logout_done(self, future: asyncio.Future[Any]) -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"External logout failed: {future.exception()}")

    def reset(self) -> None:
        """Run the reset hooks without changing identity."""
        for hook in list(self._hooks):
            try:
                hook()
            except Exception:
                logger.exception(f"Session reset hook {hook!r} failed")

    def _change_identity(self, identity: str | None, force: bool = False) -> None:
        if identity == self._identity and not force:
            return
        previous = self._identity
        self._identity = identity
        self._generation += 1
        logger.info(f"Session identity changed ({previous!r} -> {identity!r}); resetting caches")
        self.reset()
