"""Tests for SyncedCollection: optimistic writes, offline queueing and replay."""

import asyncio
import json

import httpx
import pytest

from tests.conftest import envelope, respond
from tripsync.models import PackingItem, Participant
from tripsync.runtime import PACKING_ITEMS, PARTICIPANTS
from tripsync.services.errors import (
    HTTPError,
    NetworkUnavailableError,
    TransportError,
    ValidationError,
)

ITEMS = "/trips/12/items"
PEOPLE = "/trips/12/participants"


def packing(item_id: int, name: str, quantity: int = 1, **fields) -> dict:
    return {"id": item_id, "name": name, "quantity": quantity, **fields}


def unreachable(request: httpx.Request):
    raise httpx.ConnectError("connection reset", request=request)


@pytest.fixture
def items(runtime):
    return runtime.collection(PACKING_ITEMS, owner_id=12)


async def seed(api, items, *records: dict) -> None:
    """Load server state into the cache through a normal refresh."""
    api.add("GET", ITEMS, respond(200, envelope(list(records))))
    await items.refresh(force=True)


class TestOfflineCreate:
    async def test_sunscreen_round_trip(self, api, runtime, items):
        # Given: offline, the user adds an item
        await runtime.reachability.set_online(False)
        created = await items.create(PackingItem(id=0, name="Sunscreen", quantity=1))

        # Then: visible immediately under a temporary id, one create queued
        assert created.id == -1
        assert [(i.id, i.name) for i in await items.items()] == [(-1, "Sunscreen")]
        assert len(items.queue) == 1
        assert api.requests == []

        # When: connectivity returns and the server assigns id 57
        api.add("POST", ITEMS, respond(201, envelope(packing(57, "Sunscreen"))))
        api.add("GET", ITEMS, respond(200, envelope([packing(57, "Sunscreen")])))
        await runtime.reachability.set_online(True)

        # Then: exactly one entry with the server id, nothing left to replay
        assert [(i.id, i.name) for i in await items.items()] == [(57, "Sunscreen")]
        assert len(items.queue) == 0
        assert await runtime.store.get_json(items.queue.store_key) == []

        body = json.loads(api.calls("POST", ITEMS)[0].content)
        assert body["name"] == "Sunscreen"
        assert "id" not in body

    async def test_connectivity_failure_queues(self, api, items):
        api.add("POST", ITEMS, unreachable)

        created = await items.create(PackingItem(id=0, name="Sunscreen"))

        assert created.id == -1
        assert len(items.queue) == 1
        assert [i.id for i in await items.items()] == [-1]

    async def test_create_then_delete_offline_sends_nothing(self, api, runtime, items):
        await runtime.reachability.set_online(False)
        created = await items.create(PackingItem(id=0, name="Sunscreen"))

        await items.delete(created.id)

        assert await items.items() == []
        assert len(items.queue) == 0

    async def test_update_folds_into_pending_create(self, api, runtime, items):
        # Given
        await runtime.reachability.set_online(False)
        created = await items.create(PackingItem(id=0, name="Sunscreen"))
        await items.update(created.model_copy(update={"quantity": 3}))

        # When
        api.add("POST", ITEMS, respond(201, envelope(packing(57, "Sunscreen", 3))))
        api.add("GET", ITEMS, respond(200, envelope([packing(57, "Sunscreen", 3)])))
        await runtime.reachability.set_online(True)

        # Then: one create carrying the latest quantity, no separate update
        assert json.loads(api.calls("POST", ITEMS)[0].content)["quantity"] == 3
        assert api.calls("PATCH", f"{ITEMS}/57") == []
        assert [(i.id, i.quantity) for i in await items.items()] == [(57, 3)]


class TestOnlineWrites:
    async def test_create(self, api, items):
        api.add("POST", ITEMS, respond(201, envelope(packing(57, "Sunscreen"))))

        created = await items.create(PackingItem(id=0, name="Sunscreen"))

        assert created.id == 57
        assert [i.id for i in await items.items()] == [57]
        assert len(items.queue) == 0

    async def test_rejected_create_rolls_back(self, api, items):
        api.add("POST", ITEMS, respond(400, {"message": "bad quantity"}))

        with pytest.raises(HTTPError):
            await items.create(PackingItem(id=0, name="Sunscreen", quantity=-1))

        assert await items.items() == []
        assert len(items.queue) == 0

    async def test_validation_happens_before_anything(self, api, items):
        with pytest.raises(ValidationError):
            await items.create(PackingItem(id=0, name="   "))

        assert api.requests == []
        assert await items.items() == []

    async def test_update(self, api, items):
        await seed(api, items, packing(1, "Towel"))
        api.add("PATCH", f"{ITEMS}/1", respond(200, envelope(packing(1, "Towel", 2))))

        updated = await items.update(PackingItem(id=1, name="Towel", quantity=2))

        assert updated.quantity == 2
        assert (await items.items())[0].quantity == 2

    async def test_rejected_update_rolls_back(self, api, items):
        await seed(api, items, packing(1, "Towel"))
        api.add("PATCH", f"{ITEMS}/1", respond(409, {"message": "conflict"}))

        with pytest.raises(HTTPError):
            await items.update(PackingItem(id=1, name="Towel", quantity=5))

        assert (await items.items())[0].quantity == 1

    async def test_update_unknown_id(self, api, items):
        with pytest.raises(ValidationError):
            await items.update(PackingItem(id=99, name="Ghost"))

    async def test_rejected_delete_restores_position(self, api, items):
        await seed(api, items, packing(1, "Towel"), packing(2, "Hat"), packing(3, "Map"))
        api.add("DELETE", f"{ITEMS}/2", respond(422, {"message": "item is locked"}))

        with pytest.raises(HTTPError):
            await items.delete(2)

        assert [i.id for i in await items.items()] == [1, 2, 3]

    async def test_delete(self, api, items):
        await seed(api, items, packing(1, "Towel"), packing(2, "Hat"))
        api.add("DELETE", f"{ITEMS}/1", respond(204))

        await items.delete(1)

        assert [i.id for i in await items.items()] == [2]
        assert len(items.queue) == 0


class TestOnlineOnly:
    @pytest.fixture
    def people(self, runtime):
        return runtime.collection(PARTICIPANTS, owner_id=12)

    async def test_offline_delete_rejected_without_local_change(self, api, runtime, people):
        # Given
        api.add("GET", PEOPLE, respond(200, envelope([{"id": 4, "trip_id": 12, "user_id": 9}])))
        await people.refresh(force=True)
        await runtime.reachability.set_online(False)

        # Then
        with pytest.raises(NetworkUnavailableError):
            await people.delete(4)
        with pytest.raises(NetworkUnavailableError):
            await people.create(Participant(id=0, trip_id=12, user_id=10))

        assert [p.id for p in await people.items()] == [4]
        assert len(people.queue) == 0

    async def test_connectivity_failure_rolls_back(self, api, people):
        api.add("GET", PEOPLE, respond(200, envelope([{"id": 4, "trip_id": 12, "user_id": 9}])))
        await people.refresh(force=True)
        api.add("DELETE", f"{PEOPLE}/4", unreachable)

        with pytest.raises(TransportError):
            await people.delete(4)

        assert [p.id for p in await people.items()] == [4]
        assert len(people.queue) == 0


class TestReplay:
    async def test_failure_blocks_only_that_entity(self, api, runtime, items):
        # Given: two server items changed offline, the first also deleted
        api.add(
            "GET",
            ITEMS,
            respond(200, envelope([packing(1, "Towel"), packing(2, "Hat")])),
            respond(200, envelope([packing(1, "Towel"), packing(2, "Hat", 3)])),
        )
        await items.refresh(force=True)
        await runtime.reachability.set_online(False)
        await items.update(PackingItem(id=1, name="Towel", quantity=2))
        await items.update(PackingItem(id=2, name="Hat", quantity=3))
        await items.delete(1)

        api.add("PATCH", f"{ITEMS}/1", respond(409, {"message": "conflict"}))
        api.add("PATCH", f"{ITEMS}/2", respond(200, envelope(packing(2, "Hat", 3))))

        # When
        await runtime.reachability.set_online(True)

        # Then: item 2 went out, item 1 stopped at its first failure
        assert len(api.calls("PATCH", f"{ITEMS}/1")) == 1
        assert len(api.calls("PATCH", f"{ITEMS}/2")) == 1
        assert api.calls("DELETE", f"{ITEMS}/1") == []
        assert [op.target_id for op in items.queue.operations] == [1, 1]
        assert [(i.id, i.quantity) for i in await items.items()] == [(2, 3)]

        # And the next flush retries it in order
        report = await items.flush_pending()
        assert (report.succeeded, report.failed, report.skipped) == (0, 1, 1)

    async def test_delete_already_gone_counts_as_done(self, api, runtime, items):
        await seed(api, items, packing(1, "Towel"))
        await runtime.reachability.set_online(False)
        await items.delete(1)
        api.add("DELETE", f"{ITEMS}/1", respond(404, {"message": "missing"}))

        await runtime.reachability.set_online(True)

        assert len(items.queue) == 0

    async def test_flush_while_offline_skips_everything(self, runtime, items):
        await runtime.reachability.set_online(False)
        await items.create(PackingItem(id=0, name="Sunscreen"))

        report = await items.flush_pending()

        assert report.skipped == 1
        assert report.succeeded == 0

    async def test_pending_create_survives_refresh(self, api, runtime, items):
        # Given: the create is refused for now
        await runtime.reachability.set_online(False)
        await items.create(PackingItem(id=0, name="Sunscreen"))
        api.add("POST", ITEMS, respond(409, {"message": "try later"}))
        api.add("GET", ITEMS, respond(200, envelope([packing(1, "Towel")])))

        # When
        await runtime.reachability.set_online(True)

        # Then: server state merged, local create still visible and queued
        assert [(i.id, i.name) for i in await items.items()] == [(1, "Towel"), (-1, "Sunscreen")]
        assert len(items.queue) == 1


class TestLoad:
    async def test_one_background_refetch_for_many_readers(self, api, runtime, items):
        # Given
        gate = asyncio.Event()

        async def slow_list(request):
            await gate.wait()
            return httpx.Response(200, json=envelope([packing(1, "Towel")]))

        api.add("GET", ITEMS, slow_list)

        # When: several screens read the stale collection at once
        results = await asyncio.gather(*(items.load() for _ in range(5)))
        gate.set()
        await runtime.deduplicator.wait_idle()

        # Then
        assert all(result == [] for result in results)
        assert len(api.calls("GET", ITEMS)) == 1
        assert [i.id for i in await items.items()] == [1]

    async def test_fresh_cache_served_without_network(self, api, items):
        await seed(api, items, packing(1, "Towel"))

        cached = await items.load()

        assert [i.id for i in cached] == [1]
        assert len(api.calls("GET", ITEMS)) == 1

    async def test_offline_serves_cache(self, api, runtime, items):
        await runtime.reachability.set_online(False)

        assert await items.load() == []
        assert api.requests == []


class TestConcurrentFlush:
    async def test_overlapping_flushes_send_each_create_once(self, api, items):
        # Given: a create queued after a connection failure, replay is slow
        gate = asyncio.Event()

        async def slow_create(request):
            await gate.wait()
            return httpx.Response(201, json=envelope(packing(57, "Sunscreen")))

        api.add("POST", ITEMS, unreachable, slow_create)
        await items.create(PackingItem(id=0, name="Sunscreen"))
        assert len(items.queue) == 1

        # When: two reconnect paths flush at the same time
        flushes = [asyncio.create_task(items.flush_pending()) for _ in range(2)]
        await asyncio.sleep(0.05)
        gate.set()
        first, second = await asyncio.gather(*flushes)

        # Then: the failed attempt plus exactly one replay
        assert len(api.calls("POST", ITEMS)) == 2
        assert first.succeeded + second.succeeded == 1
        assert [i.id for i in await items.items()] == [57]
        assert len(items.queue) == 0


def gated(gate: asyncio.Event, route):
    """Route that answers only once the gate opens."""

    async def wrapper(request: httpx.Request):
        await gate.wait()
        return route(request)

    return wrapper


async def until_sent(api, method: str, path: str) -> None:
    while not api.calls(method, path):
        await asyncio.sleep(0)


class TestChangesDuringCreate:
    async def test_delete_then_connection_failure_sends_nothing(self, api, items):
        # Given: the create is on the wire when the user deletes the item
        gate = asyncio.Event()
        api.add("POST", ITEMS, gated(gate, unreachable))
        creating = asyncio.create_task(items.create(PackingItem(id=0, name="Sunscreen")))
        await until_sent(api, "POST", ITEMS)
        await items.delete(-1)

        # When: the create loses its connection
        gate.set()
        await creating

        # Then: nothing queued, nothing comes back
        assert len(items.queue) == 0
        assert await items.items() == []

        report = await items.flush_pending()
        assert report.succeeded == 0
        assert len(api.calls("POST", ITEMS)) == 1
        assert api.calls("DELETE", f"{ITEMS}/-1") == []

    async def test_delete_then_rejected_create_leaves_no_orphans(self, api, items):
        gate = asyncio.Event()
        api.add("POST", ITEMS, gated(gate, respond(400, {"message": "bad item"})))
        creating = asyncio.create_task(items.create(PackingItem(id=0, name="Sunscreen")))
        await until_sent(api, "POST", ITEMS)
        await items.delete(-1)

        gate.set()
        with pytest.raises(HTTPError):
            await creating

        assert len(items.queue) == 0
        assert await items.items() == []

    async def test_update_then_connection_failure_folds_into_create(self, api, items):
        # Given
        gate = asyncio.Event()
        api.add("POST", ITEMS, gated(gate, unreachable))
        creating = asyncio.create_task(items.create(PackingItem(id=0, name="Sunscreen")))
        await until_sent(api, "POST", ITEMS)
        await items.update(PackingItem(id=-1, name="Sunscreen", quantity=3))

        # When
        gate.set()
        await creating

        # Then: one queued create carrying the latest quantity
        assert [(op.kind.value, op.target_id) for op in items.queue.operations] == [("create", -1)]
        assert items.queue.operations[0].payload["quantity"] == 3

    async def test_delete_then_success_deletes_by_server_id(self, api, runtime, items):
        # Given
        gate = asyncio.Event()
        api.add("POST", ITEMS, gated(gate, respond(201, envelope(packing(57, "Sunscreen")))))
        api.add("DELETE", f"{ITEMS}/57", respond(204))
        creating = asyncio.create_task(items.create(PackingItem(id=0, name="Sunscreen")))
        await until_sent(api, "POST", ITEMS)
        await items.delete(-1)

        # When
        gate.set()
        await creating
        await runtime.deduplicator.wait_idle()

        # Then: the delete followed under the server id, never under -1
        assert len(api.calls("DELETE", f"{ITEMS}/57")) == 1
        assert api.calls("DELETE", f"{ITEMS}/-1") == []
        assert await items.items() == []
        assert len(items.queue) == 0

    async def test_queued_change_for_in_flight_create_is_held(self, api, runtime, items):
        gate = asyncio.Event()
        api.add("POST", ITEMS, gated(gate, respond(201, envelope(packing(57, "Sunscreen")))))
        api.add("DELETE", f"{ITEMS}/57", respond(204))
        creating = asyncio.create_task(items.create(PackingItem(id=0, name="Sunscreen")))
        await until_sent(api, "POST", ITEMS)
        await items.delete(-1)

        report = await items.flush_pending()

        assert report.skipped == 1
        assert api.calls("DELETE", f"{ITEMS}/-1") == []
        gate.set()
        await creating
        await runtime.deduplicator.wait_idle()
        assert len(api.calls("DELETE", f"{ITEMS}/57")) == 1
