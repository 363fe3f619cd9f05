"""Shared session handling for the metadata services."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from vaultfs.exceptions import VaultError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


class SessionService:
    """Base class for services that run against the metadata store.

    Every public operation accepts an optional ``session``. When the caller
    provides one, the service only flushes and the caller owns the commit.
    Otherwise the service opens a session from its factory and commits,
    rolls back, and closes it.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]) -> None:
        self._session_factory = session_factory

    # =========================================================================
    # Session Resolution
    # =========================================================================

    def _resolve_session(self, session: AsyncSession | None) -> tuple[AsyncSession, bool]:
        """Return ``(session, owns_it)``."""
        if session is not None:
            return session, False
        return self._session_factory(), True

    @asynccontextmanager
    async def _transaction(
        self,
        session: AsyncSession | None,
        action: str,
    ) -> AsyncIterator[AsyncSession]:
        """Unit of work around one operation.

        Commits on success when the session is ours, flushes otherwise.
        Domain errors are logged at debug, anything else with a traceback.
        """
        _session, owns = self._resolve_session(session)
        try:
            yield _session
            if owns:
                await _session.commit()
            else:
                await _session.flush()
        except VaultError as e:
            logger.debug("%s rejected: %s", action, e)
            if owns:
                await _session.rollback()
            raise
        except Exception as e:
            logger.error("%s failed: %s", action, e, exc_info=True)
            if owns:
                await _session.rollback()
            raise
        finally:
            if owns:
                await _session.close()

    @asynccontextmanager
    async def _reading(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        """Read-only scope: never commits, closes the session if it is ours."""
        _session, owns = self._resolve_session(session)
        try:
            yield _session
        finally:
            if owns:
                await _session.close()
