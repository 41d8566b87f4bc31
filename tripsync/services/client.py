"""
RequestPipeline - one logical authenticated request with classification.

Flow per call:
- Offline            -> NetworkUnavailableError, nothing sent
- 204 / empty body   -> NoContent when requested, else DecodeError
- 2xx with body      -> validated into the requested type, else DecodeError
- non-2xx            -> HTTPError
- httpx failures     -> TransportError
- HTTPError/DecodeError with an auth-retryable status -> refresh the token
  once and re-issue; a second such failure -> SessionExpiredError
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, TypeVar

import httpx
from loguru import logger
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from tripsync.services.errors import (
    DecodeError,
    HTTPError,
    NetworkUnavailableError,
    SessionExpiredError,
    TransportError,
)
from tripsync.services.events import Signals
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.refresh import RefreshCoordinator
from tripsync.services.session import SessionStore

T = TypeVar("T")

DEFAULT_AUTH_RETRY_STATUSES = frozenset({401, 403, 500})

# One original attempt plus one retry after a token refresh
MAX_ATTEMPTS = 2


class NoContent:
    """Marker response type for endpoints answering 204 or an empty body."""

    def __eq__(self, other: object) -> bool:
        return isinstance(other, NoContent)

    def __hash__(self) -> int:
        return hash(NoContent)

    def __repr__(self) -> str:
        return "NoContent()"


@dataclass
class RequestDescriptor:
    """A fully-formed request, minus the Authorization header."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json_data: Any | None = None
    params: dict[str, Any] | None = None
    authenticated: bool = True

    def describe(self) -> str:
        return f"{self.method} {self.url}"


class RequestPipeline:
    """
    Usage:
        pipeline = RequestPipeline(http_client, sessions, refresher, monitor, signals)

        items = await pipeline.send(
            RequestDescriptor("GET", "https://api/trips/1/items"),
            ApiResponse[list[PackingItem]],
        )
        await pipeline.send(RequestDescriptor("DELETE", url), NoContent)

    Cancelling the calling task cancels the in-flight request; no retry
    follows a cancellation.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        sessions: SessionStore,
        refresher: RefreshCoordinator,
        reachability: ReachabilityMonitor,
        signals: Signals,
        request_timeout: float = 20.0,
        resource_timeout: float = 60.0,
        auth_retry_statuses: frozenset[int] = DEFAULT_AUTH_RETRY_STATUSES,
        debug: bool = False,
    ):
        self._http_client = http_client
        self._sessions = sessions
        self._refresher = refresher
        self._reachability = reachability
        self._signals = signals
        self._request_timeout = request_timeout
        self._resource_timeout = resource_timeout
        self._auth_retry_statuses = auth_retry_statuses
        self._debug = debug
        self._adapters: dict[Any, TypeAdapter[Any]] = {}

    async def send(self, request: RequestDescriptor, response_type: type[T]) -> T:
        """
        Issue the request and decode the response.

        Raises:
            NetworkUnavailableError: offline, nothing was sent
            TransportError: connection, DNS or timeout failure
            HTTPError: non-2xx status that is not auth-retryable
            DecodeError: body does not match response_type
            SessionExpiredError: auth-retryable failure survived one refresh
        """
        if not self._reachability.is_online:
            logger.warning(f"Offline, not sending {request.describe()}")
            raise NetworkUnavailableError()

        for attempt in range(1, MAX_ATTEMPTS + 1):
            try:
                return await self._execute(request, response_type)
            except (HTTPError, DecodeError) as e:
                if not request.authenticated or not self._is_auth_retryable(e):
                    raise
                if attempt == MAX_ATTEMPTS:
                    logger.error(
                        f"{request.describe()} still failing with HTTP {e.status_code} "
                        "after token refresh"
                    )
                    await self._sessions.clear()
                    await self._signals.auth_expired.emit()
                    raise SessionExpiredError() from e

                logger.warning(
                    f"{request.describe()} failed with HTTP {e.status_code}, refreshing token"
                )
                await self._refresher.refresh()

        raise AssertionError("unreachable")

    def _is_auth_retryable(self, error: HTTPError | DecodeError) -> bool:
        return error.status_code in self._auth_retry_statuses

    async def _execute(self, request: RequestDescriptor, response_type: type[T]) -> T:
        """Execute the actual HTTP request."""
        headers = dict(request.headers)
        if request.authenticated:
            token = self._sessions.access_token
            if token:
                headers["Authorization"] = f"Bearer {token}"

        try:
            response = await asyncio.wait_for(
                self._http_client.request(
                    method=request.method,
                    url=request.url,
                    params=request.params,
                    headers=headers,
                    json=request.json_data,
                    timeout=self._request_timeout,
                ),
                timeout=self._resource_timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportError(
                f"{request.describe()} exceeded resource timeout of {self._resource_timeout}s"
            ) from e
        except httpx.TimeoutException as e:
            raise TransportError(
                f"{request.describe()} timed out after {self._request_timeout}s"
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"{request.describe()} failed: {e}") from e

        self._log(f"{request.describe()} -> {response.status_code}")
        return self._decode(response, response_type)

    def _decode(self, response: httpx.Response, response_type: type[T]) -> T:
        status = response.status_code
        if not response.is_success:
            raise HTTPError(status, response.text)

        if status == 204 or not response.content:
            if response_type is NoContent:
                return NoContent()  # type: ignore[return-value]
            raise DecodeError(status, "empty body")

        if response_type is NoContent:
            return NoContent()  # type: ignore[return-value]

        try:
            return self._adapter(response_type).validate_json(response.content)
        except PydanticValidationError as e:
            raise DecodeError(status, str(e)) from e

    def _adapter(self, response_type: Any) -> TypeAdapter[Any]:
        adapter = self._adapters.get(response_type)
        if adapter is None:
            adapter = TypeAdapter(response_type)
            self._adapters[response_type] = adapter
        return adapter

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RequestPipeline] {message}")
