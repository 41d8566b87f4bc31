"""
SessionStore - the signed-in user's credentials and display profile.

One instance per runtime; persisted so the profile can be shown offline.
"""

import asyncio
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import BaseModel

from tripsync.services.errors import SessionExpiredError

if TYPE_CHECKING:
    from tripsync.datastore.store import PersistentStore

SESSION_KEY = "session"


class Session(BaseModel):
    """Access/refresh credentials plus lightweight profile fields."""

    access_token: str
    refresh_token: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    user_id: int | None = None

    @property
    def display_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p).strip()

    @property
    def initials(self) -> str:
        first = (self.first_name or "")[:1]
        last = (self.last_name or "")[:1]
        return f"{first}{last}".upper()


class SessionStore:
    """
    Holds the current Session in memory and mirrors it to the store.

    Usage:
        sessions = SessionStore(store)
        await sessions.load()
        await sessions.set(Session(access_token="a", refresh_token="r"))
        token = sessions.access_token
    """

    def __init__(self, store: "PersistentStore"):
        self._store = store
        self._session: Session | None = None
        self._lock = asyncio.Lock()

    async def load(self) -> Session | None:
        """Restore the persisted session, if any."""
        data = await self._store.get_json(SESSION_KEY)
        if data:
            self._session = Session.model_validate(data)
            logger.info(f"Restored session for user '{self._session.username}'")
        return self._session

    def get(self) -> Session | None:
        return self._session

    @property
    def access_token(self) -> str | None:
        return self._session.access_token if self._session else None

    @property
    def refresh_token(self) -> str | None:
        return self._session.refresh_token if self._session else None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None

    async def set(self, session: Session) -> None:
        async with self._lock:
            self._session = session
            await self._store.set_json(SESSION_KEY, session.model_dump())
        logger.info(f"Session set for user '{session.username}'")

    async def update_tokens(
        self,
        access_token: str,
        refresh_token: str,
        expected_refresh_token: str | None = None,
    ) -> Session:
        """
        Replace both tokens together, keeping the profile fields.

        Tokens are only ever applied to an existing session. When
        expected_refresh_token is given, the current session must still
        hold it, so a refresh finishing after logout or a new sign-in
        is discarded.

        Raises:
            SessionExpiredError: signed out, or the session was replaced
        """
        async with self._lock:
            current = self._session
            if current is None or (
                expected_refresh_token is not None
                and current.refresh_token != expected_refresh_token
            ):
                logger.warning("Session changed during token refresh, new tokens discarded")
                raise SessionExpiredError("Session ended during token refresh")

            session = current.model_copy(
                update={"access_token": access_token, "refresh_token": refresh_token}
            )
            await self._store.set_json(SESSION_KEY, session.model_dump())
            self._session = session
        logger.debug("Session tokens updated")
        return session

    async def clear(self) -> None:
        async with self._lock:
            self._session = None
            await self._store.delete(SESSION_KEY)
        logger.info("Session cleared")
