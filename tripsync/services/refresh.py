"""
RefreshCoordinator - single-flight access-token refresh.

Only one refresh call is ever on the wire. Callers that arrive while it
is in flight either await the same result (RefreshPolicy.AWAIT) or fail
fast with RefreshInProgressError (RefreshPolicy.FAIL_FAST).
"""

import asyncio
from enum import Enum

import httpx
from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from tripsync.models import ApiResponse, TokenData
from tripsync.services.errors import (
    DecodeError,
    HTTPError,
    NetworkUnavailableError,
    RefreshInProgressError,
    SessionExpiredError,
    TransportError,
)
from tripsync.services.events import Signals
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.session import Session, SessionStore


class RefreshPolicy(str, Enum):
    """What a caller does when a refresh is already in flight."""

    AWAIT = "await"  # Share the in-flight result
    FAIL_FAST = "fail_fast"  # Raise RefreshInProgressError


class RefreshCoordinator:
    """
    Usage:
        coordinator = RefreshCoordinator(http_client, sessions, signals, monitor,
                                         refresh_url="https://api/auth/refresh-token")
        session = await coordinator.refresh()
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        sessions: SessionStore,
        signals: Signals,
        reachability: ReachabilityMonitor,
        refresh_url: str,
        policy: RefreshPolicy = RefreshPolicy.AWAIT,
        timeout: float = 20.0,
    ):
        self._http_client = http_client
        self._sessions = sessions
        self._signals = signals
        self._reachability = reachability
        self._refresh_url = refresh_url
        self._policy = policy
        self._timeout = timeout

        self._in_flight: asyncio.Task[Session] | None = None
        self._lock = asyncio.Lock()
        self._generation = 0
        self.network_calls = 0

    @property
    def is_refreshing(self) -> bool:
        return self._in_flight is not None

    def reset(self) -> None:
        """Disown any in-flight refresh (logout); its result is discarded."""
        self._generation += 1
        self._in_flight = None
        logger.debug(f"Refresh state reset (generation={self._generation})")

    async def refresh(self) -> Session:
        """
        Obtain a new access token.

        Raises:
            SessionExpiredError: no refresh token, or the server rejected it
            RefreshInProgressError: fail-fast policy and a refresh is running
            NetworkUnavailableError / TransportError: could not reach the server
        """
        async with self._lock:
            if self._in_flight is not None:
                if self._policy == RefreshPolicy.FAIL_FAST:
                    logger.warning("Refresh already in flight, failing fast")
                    raise RefreshInProgressError()
                logger.debug("Refresh already in flight, awaiting shared result")
                task = self._in_flight
            else:
                refresh_token = self._sessions.refresh_token
                if not refresh_token:
                    logger.warning("No refresh token available")
                    await self._signals.auth_expired.emit()
                    raise SessionExpiredError("No refresh token available")

                task = asyncio.create_task(
                    self._refresh_and_cleanup(refresh_token, self._generation)
                )
                self._in_flight = task

        # Waiters must not cancel the shared refresh when they are cancelled
        return await asyncio.shield(task)

    async def _refresh_and_cleanup(self, refresh_token: str, generation: int) -> Session:
        try:
            return await self._do_refresh(refresh_token, generation)
        finally:
            async with self._lock:
                if self._generation == generation:
                    self._in_flight = None

    async def _do_refresh(self, refresh_token: str, generation: int) -> Session:
        if not self._reachability.is_online:
            raise NetworkUnavailableError()

        self.network_calls += 1
        logger.info("Refreshing access token")
        try:
            response = await self._http_client.post(
                self._refresh_url,
                json={"refresh_token": refresh_token},
                timeout=self._timeout,
            )
        except httpx.TimeoutException as e:
            raise TransportError(f"Token refresh timed out after {self._timeout}s") from e
        except httpx.RequestError as e:
            raise TransportError(f"Token refresh failed: {e}") from e

        try:
            if not response.is_success:
                raise HTTPError(response.status_code, response.text)
            try:
                envelope = ApiResponse[TokenData].model_validate_json(response.content)
            except PydanticValidationError as e:
                raise DecodeError(response.status_code, str(e)) from e
        except (HTTPError, DecodeError) as e:
            logger.error(f"Token refresh rejected: {e}")
            if generation != self._generation:
                raise SessionExpiredError("Signed out during token refresh") from e
            await self._sessions.clear()
            await self._signals.auth_expired.emit()
            raise SessionExpiredError("Refresh token rejected") from e

        if generation != self._generation:
            logger.warning("Signed out during token refresh, new tokens discarded")
            raise SessionExpiredError("Signed out during token refresh")

        tokens = envelope.data.token
        session = await self._sessions.update_tokens(
            tokens.access_token, tokens.refresh_token, expected_refresh_token=refresh_token
        )
        logger.info("Access token refreshed")
        return session
