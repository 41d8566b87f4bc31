"""
SyncRuntime - one explicit object owning every synchronization service.

Constructed once per process and handed to consumers; nothing in the
package lives in module globals.
"""

from datetime import datetime, timedelta
from typing import Any, Callable

import httpx
from loguru import logger

from tripsync.datastore import Database, PersistentStore
from tripsync.models import (
    Activity,
    ActivityImage,
    PackingItem,
    Participant,
    Trip,
    TripDay,
)
from tripsync.services.cache import TieredCache
from tripsync.services.client import RequestPipeline
from tripsync.services.collection import CollectionConfig, ReplayReport, SyncedCollection
from tripsync.services.deduplicator import RequestDeduplicator
from tripsync.services.errors import ServiceError, SessionExpiredError
from tripsync.services.events import Signals
from tripsync.services.pending import OperationKind, PendingOperationQueue
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.refresh import RefreshCoordinator, RefreshPolicy
from tripsync.services.session import Session, SessionStore
from tripsync.services.temp_ids import TempIdAllocator
from tripsync.settings import Settings, load_settings

PENDING_PREFIX = "pending:"
CACHE_PREFIX = "cache:"

# Collection catalog

TRIPS = CollectionConfig(
    name="trips",
    model=Trip,
    list_path="/trips",
    item_path="/trips/{item_id}",
    required_fields=("name",),
)

TRIP_DAYS = CollectionConfig(
    name="trip_days",
    model=TripDay,
    list_path="/trips/{owner_id}/days",
    item_path="/trips/{owner_id}/days/{item_id}",
    required_fields=("day",),
)

ACTIVITIES = CollectionConfig(
    name="activities",
    model=Activity,
    list_path="/trips/{trip_id}/days/{owner_id}/activities",
    item_path="/trips/{trip_id}/days/{owner_id}/activities/{item_id}",
    required_fields=("activity",),
)

PARTICIPANTS = CollectionConfig(
    name="participants",
    model=Participant,
    list_path="/trips/{owner_id}/participants",
    item_path="/trips/{owner_id}/participants/{item_id}",
    offline_operations=frozenset(),
)

PACKING_ITEMS = CollectionConfig(
    name="packing_items",
    model=PackingItem,
    list_path="/trips/{owner_id}/items",
    item_path="/trips/{owner_id}/items/{item_id}",
    required_fields=("name",),
)

# Images are uploaded elsewhere; only listing and deleting go through here
ACTIVITY_IMAGES = CollectionConfig(
    name="activity_images",
    model=ActivityImage,
    list_path="/trips/{trip_id}/days/{trip_day_id}/activities/{owner_id}/images",
    item_path="/images/delete/{item_id}",
    offline_operations=frozenset({OperationKind.DELETE}),
    refresh_on_reconnect=False,
)

CATALOG: dict[str, CollectionConfig[Any]] = {
    config.name: config
    for config in (TRIPS, TRIP_DAYS, ACTIVITIES, PARTICIPANTS, PACKING_ITEMS, ACTIVITY_IMAGES)
}


class SyncRuntime:
    """
    Usage:
        async with SyncRuntime(load_settings()) as runtime:
            await runtime.sign_in(Session(access_token="a", refresh_token="r"))

            items = runtime.collection(PACKING_ITEMS, owner_id=12)
            cached = await items.load()

            await runtime.reachability.set_online(False)
            await items.create(PackingItem(id=0, name="Sunscreen"))
            await runtime.reachability.set_online(True)   # flush + refresh

            await runtime.logout()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = datetime.now,
        catalog: dict[str, CollectionConfig[Any]] | None = None,
    ):
        self.settings = settings or load_settings()
        self._clock = clock
        self._catalog = dict(catalog if catalog is not None else CATALOG)

        self.database = Database(self.settings.database_url, echo=self.settings.database_echo)
        self.store = PersistentStore(self.database)

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=self.settings.request_timeout)

        self.signals = Signals()
        self.sessions = SessionStore(self.store)
        self.reachability = ReachabilityMonitor(
            self.signals,
            reconnect_min_interval=self.settings.reconnect_min_interval,
            probe_url=self.settings.probe_url,
            probe_interval_seconds=self.settings.probe_interval_seconds,
            http_client=self.http_client,
        )
        self.refresher = RefreshCoordinator(
            self.http_client,
            self.sessions,
            self.signals,
            self.reachability,
            refresh_url=self.settings.api_base_url.rstrip("/") + self.settings.refresh_path,
            policy=RefreshPolicy(self.settings.refresh_policy),
            timeout=self.settings.request_timeout,
        )
        self.pipeline = RequestPipeline(
            self.http_client,
            self.sessions,
            self.refresher,
            self.reachability,
            self.signals,
            request_timeout=self.settings.request_timeout,
            resource_timeout=self.settings.resource_timeout,
            auth_retry_statuses=self.settings.auth_retry_statuses,
            debug=self.settings.debug,
        )
        self.temp_ids = TempIdAllocator(self.store)
        self.deduplicator = RequestDeduplicator(debug=self.settings.debug)

        self._caches: dict[str, TieredCache[Any]] = {}
        self._collections: dict[tuple[str, int | None], SyncedCollection[Any]] = {}
        self._started = False

        self.reachability.on_reconnect(self._on_reconnect)
        self.signals.auth_expired.connect(self._on_auth_expired)

    async def __aenter__(self) -> "SyncRuntime":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        """Open the store, restore the session and any queued work."""
        if self._started:
            return

        await self.store.init()
        session = await self.sessions.load()
        restored = await self.restore_pending()
        if self.settings.probe_url:
            self.reachability.start_probing()

        self._started = True
        logger.info(
            f"Sync runtime started (signed_in={session is not None}, "
            f"restored_queues={len(restored)})"
        )

    async def close(self) -> None:
        await self.deduplicator.cancel_all()
        await self.reachability.close()
        if self._owns_http_client:
            await self.http_client.aclose()
        await self.store.close()
        self._started = False
        logger.info("Sync runtime closed")

    # Session lifecycle

    async def sign_in(self, session: Session) -> Session:
        """Adopt credentials obtained by the sign-in flow."""
        await self.sessions.set(session)
        logger.info(f"Signed in as {session.username or session.display_name or session.user_id}")
        return session

    async def logout(self) -> None:
        """
        Clear the session, every cached collection and every pending queue.

        The temporary id counter is kept so ids are never handed out twice.
        A token refresh still in flight is disowned and cannot sign the
        user back in.
        """
        self.refresher.reset()
        await self.deduplicator.cancel_all()
        await self.sessions.clear()

        for collection in self._collections.values():
            await collection.clear()
        for cache in self._caches.values():
            await cache.clear()

        removed = await self.store.delete_prefix(CACHE_PREFIX)
        removed += await self.store.delete_prefix(PENDING_PREFIX)
        logger.info(f"Logged out, {removed} stored records cleared")
        await self.signals.logged_out.emit()

    async def _on_auth_expired(self) -> None:
        logger.warning("Session expired, sign-in required")

    # Collections

    def register(self, config: CollectionConfig[Any]) -> None:
        """Add a collection type to the catalog used when restoring queues."""
        self._catalog[config.name] = config

    def cache_for(self, config: CollectionConfig[Any]) -> TieredCache[Any]:
        cache = self._caches.get(config.name)
        if cache is None:
            cache = TieredCache(
                self.store,
                config.model,
                namespace=config.name,
                default_ttl=timedelta(seconds=self.settings.cache_ttl_seconds),
                clock=self._clock,
                debug=self.settings.debug,
            )
            self._caches[config.name] = cache
        return cache

    def collection(
        self,
        config: CollectionConfig[Any],
        owner_id: int | None = None,
        **path_params: Any,
    ) -> SyncedCollection[Any]:
        """Return the collection for config and owner, creating it on first use."""
        key = (config.name, owner_id)
        collection = self._collections.get(key)
        if collection is not None:
            return collection

        self._catalog.setdefault(config.name, config)
        collection_key = "all" if owner_id is None else f"owner:{owner_id}"
        collection = SyncedCollection(
            config,
            owner_id,
            base_url=self.settings.api_base_url,
            pipeline=self.pipeline,
            cache=self.cache_for(config),
            queue=PendingOperationQueue(
                self.store,
                namespace=f"{config.name}:{collection_key}",
                debug=self.settings.debug,
            ),
            temp_ids=self.temp_ids,
            reachability=self.reachability,
            deduplicator=self.deduplicator,
            path_params=path_params,
        )
        self._collections[key] = collection
        return collection

    @property
    def collections(self) -> list[SyncedCollection[Any]]:
        return list(self._collections.values())

    async def restore_pending(self) -> list[SyncedCollection[Any]]:
        """
        Re-open collections whose pending queue survived a restart.

        Collections whose paths need more than the owner id are re-opened
        by their consumer, which supplies the extra path parameters.
        """
        restored = []
        for store_key in await self.store.keys(PENDING_PREFIX):
            name, _, collection_key = store_key[len(PENDING_PREFIX):].partition(":")
            config = self._catalog.get(name)
            if config is None:
                logger.warning(f"Pending queue '{store_key}' has no registered collection")
                continue
            if "{trip_id}" in config.list_path or "{trip_day_id}" in config.list_path:
                logger.info(f"Pending queue '{store_key}' waits for its collection to be opened")
                continue

            if collection_key == "all":
                owner_id = None
            elif collection_key.startswith("owner:"):
                owner_id = int(collection_key[len("owner:"):])
            else:
                logger.warning(f"Unrecognized pending queue key '{store_key}'")
                continue

            collection = self.collection(config, owner_id)
            operations = await collection.queue.load()
            if operations:
                restored.append(collection)
        return restored

    # Sync

    async def sync_all(self) -> list[ReplayReport]:
        """
        Flush every pending queue, then refresh collections marked
        refresh-on-reconnect.

        A failing collection is logged and the others still sync; an
        expired session stops the pass.
        """
        reports = []
        for collection in self.collections:
            try:
                reports.append(await collection.flush_pending())
                if collection.config.refresh_on_reconnect:
                    await collection.refresh(force=True)
            except SessionExpiredError:
                logger.error("Session expired during sync, stopping")
                raise
            except ServiceError as e:
                logger.warning(f"Sync of '{collection.config.name}/{collection.key}' failed: {e}")
        return reports

    async def _on_reconnect(self) -> None:
        reports = await self.sync_all()
        replayed = sum(report.succeeded for report in reports)
        logger.info(f"Reconnect sync finished: {replayed} operations replayed")
