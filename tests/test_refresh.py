"""Tests for the single-flight RefreshCoordinator."""

import asyncio
from unittest.mock import Mock

import httpx
import pytest

from tests.conftest import REFRESH_URL, respond, token_envelope
from tripsync.services.errors import (
    NetworkUnavailableError,
    RefreshInProgressError,
    SessionExpiredError,
    TransportError,
)
from tripsync.services.refresh import RefreshCoordinator, RefreshPolicy
from tripsync.services.session import Session, SessionStore


def gated_refresh(gate: asyncio.Event):
    """Refresh route that answers only once the gate opens."""

    async def route(request: httpx.Request) -> httpx.Response:
        await gate.wait()
        return httpx.Response(200, json=token_envelope())

    return route


class TestRefresh:
    async def test_success_updates_tokens(self, api, refresher, sessions):
        api.add("POST", "/auth/refresh-token", respond(200, token_envelope()))

        session = await refresher.refresh()

        assert session.access_token == "access-2"
        assert sessions.refresh_token == "refresh-2"
        assert refresher.network_calls == 1
        assert refresher.is_refreshing is False

        body = api.calls("POST", "/auth/refresh-token")[0].read()
        assert b"refresh-1" in body

    async def test_concurrent_callers_share_one_call(self, api, refresher):
        # Given
        gate = asyncio.Event()
        api.add("POST", "/auth/refresh-token", gated_refresh(gate))

        # When: three callers arrive while the first refresh is on the wire
        callers = [asyncio.create_task(refresher.refresh()) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*callers)

        # Then
        assert refresher.network_calls == 1
        assert len(api.calls("POST", "/auth/refresh-token")) == 1
        assert {s.access_token for s in results} == {"access-2"}

    async def test_fail_fast_policy(
        self, api, http_client, sessions, signals, reachability
    ):
        # Given
        refresher = RefreshCoordinator(
            http_client,
            sessions,
            signals,
            reachability,
            refresh_url=REFRESH_URL,
            policy=RefreshPolicy.FAIL_FAST,
        )
        gate = asyncio.Event()
        api.add("POST", "/auth/refresh-token", gated_refresh(gate))

        # When
        first = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)

        # Then
        with pytest.raises(RefreshInProgressError):
            await refresher.refresh()

        gate.set()
        await first
        assert refresher.network_calls == 1

    async def test_no_refresh_token(self, store, refresher, sessions, signals):
        # Given
        await sessions.update_tokens("access-1", "")
        listener = Mock()
        signals.auth_expired.connect(listener)

        # Then
        with pytest.raises(SessionExpiredError):
            await refresher.refresh()
        listener.assert_called_once()
        assert refresher.network_calls == 0

    @pytest.mark.parametrize("status", [400, 401, 500])
    async def test_rejection_clears_session(self, api, store, refresher, sessions, signals, status):
        api.add("POST", "/auth/refresh-token", respond(status, {"message": "invalid"}))
        listener = Mock()
        signals.auth_expired.connect(listener)

        with pytest.raises(SessionExpiredError):
            await refresher.refresh()

        listener.assert_called_once()
        assert sessions.is_authenticated is False
        assert await SessionStore(store).load() is None

    async def test_malformed_body_clears_session(self, api, refresher, sessions):
        api.add("POST", "/auth/refresh-token", respond(200, {"data": {"unexpected": 1}}))

        with pytest.raises(SessionExpiredError):
            await refresher.refresh()
        assert sessions.is_authenticated is False

    async def test_connectivity_failure_keeps_session(self, api, refresher, sessions):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        api.add("POST", "/auth/refresh-token", unreachable)

        with pytest.raises(TransportError):
            await refresher.refresh()
        assert sessions.refresh_token == "refresh-1"
        assert refresher.is_refreshing is False

    async def test_offline(self, api, refresher, reachability):
        await reachability.set_online(False)

        with pytest.raises(NetworkUnavailableError):
            await refresher.refresh()
        assert api.requests == []


class TestSignedOutMidRefresh:
    async def test_reset_discards_result(self, api, store, refresher, sessions):
        # Given: a refresh on the wire
        gate = asyncio.Event()
        api.add("POST", "/auth/refresh-token", gated_refresh(gate))
        refreshing = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)

        # When: the user signs out before it answers
        refresher.reset()
        await sessions.clear()
        gate.set()

        # Then
        with pytest.raises(SessionExpiredError):
            await refreshing
        assert sessions.get() is None
        assert await store.get_json("session") is None
        assert refresher.is_refreshing is False

    async def test_cleared_session_not_recreated(self, api, store, refresher, sessions):
        gate = asyncio.Event()
        api.add("POST", "/auth/refresh-token", gated_refresh(gate))
        refreshing = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)

        await sessions.clear()
        gate.set()

        with pytest.raises(SessionExpiredError):
            await refreshing
        assert sessions.get() is None
        assert await store.get_json("session") is None

    async def test_new_sign_in_survives_stale_rejection(self, api, refresher, sessions):
        # Given
        gate = asyncio.Event()

        async def late_rejection(request):
            await gate.wait()
            return httpx.Response(401)

        api.add("POST", "/auth/refresh-token", late_rejection)
        refreshing = asyncio.create_task(refresher.refresh())
        await asyncio.sleep(0)

        # When: logout and a fresh sign-in happen before the old refresh answers
        refresher.reset()
        await sessions.set(Session(access_token="access-9", refresh_token="refresh-9"))
        gate.set()

        # Then
        with pytest.raises(SessionExpiredError):
            await refreshing
        assert sessions.access_token == "access-9"
