"""Shared pytest fixtures."""

import inspect
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from tripsync.datastore import Database, PersistentStore
from tripsync.runtime import SyncRuntime
from tripsync.services.client import RequestPipeline
from tripsync.services.events import Signals
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.refresh import RefreshCoordinator
from tripsync.services.session import Session, SessionStore
from tripsync.settings import Settings

BASE_URL = "https://api.test/v1"
REFRESH_URL = f"{BASE_URL}/auth/refresh-token"

Route = Callable[[httpx.Request], Any]


def respond(status: int = 200, json: Any = None) -> Route:
    """Route answering with a fresh response on every call."""

    def route(request: httpx.Request) -> httpx.Response:
        if json is None:
            return httpx.Response(status)
        return httpx.Response(status, json=json)

    return route


def envelope(data: Any) -> dict[str, Any]:
    return {"success": True, "message": "ok", "statusCode": 200, "data": data}


def token_envelope(access: str = "access-2", refresh: str = "refresh-2") -> dict[str, Any]:
    return envelope({"token": {"accessToken": access, "refreshToken": refresh}})


class FakeApi:
    """
    Scripted server behind httpx.MockTransport.

    Each (method, path) holds a list of routes used in order; the last
    one keeps answering once the others are used up.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self._routes: dict[tuple[str, str], list[Route]] = {}

    def add(self, method: str, path: str, *routes: Route) -> None:
        self._routes.setdefault((method, "/v1" + path), []).extend(routes)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r for r in self.requests if r.method == method and r.url.path == "/v1" + path
        ]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        routes = self._routes.get((request.method, request.url.path))
        if not routes:
            return httpx.Response(404, json={"message": "not found"})

        route = routes.pop(0) if len(routes) > 1 else routes[0]
        result = route(request)
        if inspect.isawaitable(result):
            result = await result
        return result


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path}/tripsync.db"


@pytest.fixture
async def store(db_url: str):
    store = PersistentStore(Database(db_url))
    await store.init()
    yield store
    await store.close()


@pytest.fixture
def api() -> FakeApi:
    return FakeApi()


@pytest.fixture
async def http_client(api: FakeApi):
    client = httpx.AsyncClient(transport=httpx.MockTransport(api.handler))
    yield client
    await client.aclose()


@pytest.fixture
def signals() -> Signals:
    return Signals()


@pytest.fixture
async def sessions(store: PersistentStore) -> SessionStore:
    sessions = SessionStore(store)
    await sessions.set(
        Session(
            access_token="access-1",
            refresh_token="refresh-1",
            first_name="Linh",
            last_name="Tran",
            username="linh",
            user_id=7,
        )
    )
    return sessions


@pytest.fixture
def reachability(signals: Signals) -> ReachabilityMonitor:
    return ReachabilityMonitor(signals, reconnect_min_interval=0)


@pytest.fixture
def refresher(http_client, sessions, signals, reachability) -> RefreshCoordinator:
    return RefreshCoordinator(
        http_client, sessions, signals, reachability, refresh_url=REFRESH_URL
    )


@pytest.fixture
def pipeline(http_client, sessions, refresher, reachability, signals) -> RequestPipeline:
    return RequestPipeline(http_client, sessions, refresher, reachability, signals)


@pytest.fixture
def make_runtime(db_url: str, http_client):
    """Build runtimes sharing one database file, as successive app launches would."""

    async def factory(**overrides) -> SyncRuntime:
        settings = Settings(
            api_base_url=BASE_URL,
            database_url=db_url,
            reconnect_min_interval=0,
            **overrides,
        )
        runtime = SyncRuntime(settings, http_client=http_client)
        await runtime.start()
        return runtime

    return factory


@pytest.fixture
async def runtime(make_runtime) -> SyncRuntime:
    runtime = await make_runtime()
    await runtime.sign_in(
        Session(access_token="access-1", refresh_token="refresh-1", username="linh")
    )
    yield runtime
    await runtime.close()
