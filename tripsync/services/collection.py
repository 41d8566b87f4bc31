"""
SyncedCollection - cache, pending queue and reconciler for one collection.

One generic implementation serves every synchronized collection (trips,
trip days, activities, participants, packing items, images); a
CollectionConfig describes the record type and endpoints.

Writes:
- validated, then applied optimistically to the cache
- sent through the request pipeline when online
- queued when offline (or on a connectivity failure) for operations the
  collection allows offline; otherwise rejected with no local change
- rolled back on any other failure, and the error re-raised
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Generic, TypeVar

from loguru import logger

from tripsync.models import ApiResponse, SyncRecord
from tripsync.services.cache import TieredCache
from tripsync.services.client import NoContent, RequestDescriptor, RequestPipeline
from tripsync.services.deduplicator import RequestDeduplicator
from tripsync.services.errors import (
    HTTPError,
    NetworkUnavailableError,
    ServiceError,
    SessionExpiredError,
    TransportError,
    ValidationError,
)
from tripsync.services.pending import (
    OperationKind,
    PendingOperation,
    PendingOperationQueue,
)
from tripsync.services.reachability import ReachabilityMonitor
from tripsync.services.reconciler import Reconciler
from tripsync.services.temp_ids import TempIdAllocator

T = TypeVar("T", bound=SyncRecord)

ALL_OPERATIONS = frozenset(OperationKind)


@dataclass
class CollectionConfig(Generic[T]):
    """Describes one synchronized collection."""

    name: str
    model: type[T]
    list_path: str  # e.g. "/trips/{owner_id}/items"
    item_path: str  # e.g. "/trips/{owner_id}/items/{item_id}"
    ttl: timedelta = timedelta(seconds=300)
    # Mutations that may be queued while offline; others are online-only
    offline_operations: frozenset[OperationKind] = ALL_OPERATIONS
    refresh_on_reconnect: bool = True
    required_fields: tuple[str, ...] = ()
    update_method: str = "PATCH"


@dataclass
class ReplayReport:
    """Outcome of one pending-queue flush."""

    collection: str
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    resolved_ids: dict[int, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "collection": self.collection,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "resolved_ids": dict(self.resolved_ids),
        }


class SyncedCollection(Generic[T]):
    """
    Usage:
        items = runtime.collection(PACKING_ITEMS, owner_id=12)

        cached = await items.load()           # immediate, refetches in background if stale
        created = await items.create(PackingItem(id=0, name="Sunscreen"))
        await items.update(created.model_copy(update={"is_packed": True}))
        await items.delete(created.id)

        report = await items.flush_pending()  # normally driven by reconnect
    """

    def __init__(
        self,
        config: CollectionConfig[T],
        owner_id: int | None,
        base_url: str,
        pipeline: RequestPipeline,
        cache: TieredCache[T],
        queue: PendingOperationQueue,
        temp_ids: TempIdAllocator,
        reachability: ReachabilityMonitor,
        deduplicator: RequestDeduplicator,
        reconciler: Reconciler[T] | None = None,
        path_params: dict[str, Any] | None = None,
    ):
        self.config = config
        self.owner_id = owner_id
        # Extra path placeholders, e.g. trip_id for activities of a trip day
        self._path_params = dict(path_params or {})
        self._base_url = base_url.rstrip("/")
        self._pipeline = pipeline
        self._cache = cache
        self._queue = queue
        self._temp_ids = temp_ids
        self._reachability = reachability
        self._dedup = deduplicator
        self._reconciler = reconciler or Reconciler()
        self._mutation_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()

    @property
    def key(self) -> str:
        """Cache key within the collection's namespace."""
        return "all" if self.owner_id is None else f"owner:{self.owner_id}"

    @property
    def queue(self) -> PendingOperationQueue:
        return self._queue

    # Reads

    async def items(self) -> list[T]:
        """Current cached items, without touching the network."""
        entry = await self._cache.read(self.key)
        return list(entry.items) if entry else []

    async def load(self) -> list[T]:
        """
        Return cached items immediately.

        When the cache is stale and the device is online, exactly one
        background refetch is scheduled, however many callers ask.
        """
        await self._queue.load()
        items = await self.items()
        if await self._cache.is_fresh(self.key, self.config.ttl):
            return items

        if self._reachability.is_online:
            self._dedup.spawn(self._dedup_key, self._refresh_now)
        else:
            logger.warning(f"Offline, serving cached '{self.config.name}/{self.key}'")
        return items

    async def refresh(self, force: bool = False) -> list[T]:
        """Fetch from the server (unless fresh and not forced) and reconcile."""
        if not force and await self._cache.is_fresh(self.key, self.config.ttl):
            return await self.items()
        return await self._dedup.dedupe(self._dedup_key, self._refresh_now)

    @property
    def _dedup_key(self) -> str:
        return f"{self.config.name}:{self.key}"

    async def _refresh_now(self) -> list[T]:
        response = await self._pipeline.send(
            RequestDescriptor("GET", self._url(self.config.list_path)),
            ApiResponse[list[self.config.model]],  # type: ignore[name-defined]
        )
        fetched = response.data
        await self._queue.load()

        async with self._mutation_lock:
            current = await self.items()
            merged = self._reconciler.merge(current, fetched)
            merged = self._overlay_pending(merged)
            await self._cache.write(self.key, merged, from_network=True)

        logger.info(f"Refreshed '{self.config.name}/{self.key}': {len(merged)} items")
        return merged

    def _overlay_pending(self, items: list[T]) -> list[T]:
        """Re-apply queued local changes on top of server state."""
        result = list(items)
        for op in self._queue.operations:
            if op.kind == OperationKind.DELETE:
                result = [item for item in result if item.id != op.target_id]
                continue

            record = self.config.model.model_validate(op.payload)
            index = _index_of(result, op.target_id)
            if index is not None:
                result[index] = record.carry_local_fields(result[index])
            elif op.kind == OperationKind.CREATE:
                result.append(record)
        return result

    # Writes

    async def create(self, record: T) -> T:
        """
        Create a record; its id is replaced by a temporary id until acknowledged.

        Returns the server record when online, else the optimistic record.
        """
        self._validate(record)
        self._check_offline_allowed(OperationKind.CREATE)

        temp_id = await self._temp_ids.next_id()
        local = record.model_copy(update={"id": temp_id})
        await self._apply(lambda items: items + [local])

        if not self._reachability.is_online:
            await self._enqueue(OperationKind.CREATE, local)
            return local

        try:
            created = await self._send_create(local)
        except (NetworkUnavailableError, TransportError) as e:
            if self._allows_offline(OperationKind.CREATE):
                logger.warning(f"Create failed ({e}), queued for replay")
                await self._enqueue(OperationKind.CREATE, local)
                return local
            await self._roll_back_create(temp_id)
            raise
        except (Exception, asyncio.CancelledError):
            await self._roll_back_create(temp_id)
            raise

        changed_meanwhile = await self._queue.retarget(temp_id, created.id)
        items = await self._apply(lambda items: self._resolve(items, temp_id, created))
        if changed_meanwhile:
            self._dedup.spawn(f"flush:{self._dedup_key}", self.flush_pending)
        return _find(items, created.id) or created

    async def _roll_back_create(self, temp_id: int) -> None:
        await self._queue.discard(temp_id)
        await self._apply(lambda items: _without(items, temp_id))

    async def update(self, record: T) -> T:
        """Replace a cached record and push the change."""
        self._validate(record)
        self._check_offline_allowed(OperationKind.UPDATE)

        previous = _find(await self.items(), record.id)
        if previous is None:
            raise ValidationError(f"Unknown {self.config.name} id {record.id}")

        local = record.carry_local_fields(previous)
        await self._apply(lambda items: _replace(items, local))

        if self._should_defer(local.id):
            await self._enqueue(OperationKind.UPDATE, local)
            return local

        try:
            updated = await self._send_update(local)
        except (NetworkUnavailableError, TransportError) as e:
            if self._allows_offline(OperationKind.UPDATE):
                logger.warning(f"Update failed ({e}), queued for replay")
                await self._enqueue(OperationKind.UPDATE, local)
                return local
            await self._apply(lambda items: _replace(items, previous))
            raise
        except (Exception, asyncio.CancelledError):
            await self._apply(lambda items: _replace(items, previous))
            raise

        merged = updated.carry_local_fields(local)
        await self._apply(lambda items: _replace(items, merged))
        return merged

    async def delete(self, record_id: int) -> None:
        """Remove a record locally and on the server."""
        self._check_offline_allowed(OperationKind.DELETE)

        current = await self.items()
        index = _index_of(current, record_id)
        if index is None:
            raise ValidationError(f"Unknown {self.config.name} id {record_id}")
        previous = current[index]

        await self._apply(lambda items: _without(items, record_id))

        if self._should_defer(record_id):
            await self._enqueue(OperationKind.DELETE, previous)
            return

        try:
            await self._send_delete(record_id)
        except (NetworkUnavailableError, TransportError) as e:
            if self._allows_offline(OperationKind.DELETE):
                logger.warning(f"Delete failed ({e}), queued for replay")
                await self._enqueue(OperationKind.DELETE, previous)
                return
            await self._apply(lambda items: _insert(items, index, previous))
            raise
        except (Exception, asyncio.CancelledError):
            await self._apply(lambda items: _insert(items, index, previous))
            raise

    # Replay

    async def flush_pending(self) -> ReplayReport:
        """
        Replay queued operations in FIFO order.

        Replay is sequential per entity: the first failure for an entity
        skips its remaining operations until the next flush, while
        operations on unrelated entities still go out. Losing
        connectivity or the session stops the flush. Concurrent flushes
        run one after another, so no operation is sent twice.
        """
        async with self._flush_lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> ReplayReport:
        report = ReplayReport(collection=f"{self.config.name}/{self.key}")
        if not self._reachability.is_online:
            report.skipped = len(await self._queue.load())
            return report

        blocked: set[int] = set()
        async for op in self._queue.drain():
            if op.target_id in blocked:
                report.skipped += 1
                continue
            if op.target_id < 0 and op.kind != OperationKind.CREATE:
                # Its create is still in flight outside the queue
                blocked.add(op.target_id)
                report.skipped += 1
                continue
            try:
                await self._replay(op, report)
            except (NetworkUnavailableError, SessionExpiredError) as e:
                report.failed += 1
                logger.warning(f"Replay of '{report.collection}' stopped: {e}")
                break
            except ServiceError as e:
                blocked.add(op.target_id)
                report.failed += 1
                logger.warning(
                    f"Replay of {op.kind.value} {op.target_id} failed, kept for next reconnect: {e}"
                )
                continue
            report.succeeded += 1

        unreached = len(self._queue) - report.failed - report.skipped
        report.skipped += max(unreached, 0)
        if report.succeeded or report.failed:
            logger.info(f"Replay finished: {report.to_dict()}")
        return report

    async def _replay(self, op: PendingOperation, report: ReplayReport) -> None:
        record = self.config.model.model_validate(op.payload)

        if op.kind == OperationKind.CREATE:
            created = await self._send_create(record)
            await self._queue.ack(op.operation_id)
            await self._queue.retarget(op.target_id, created.id)
            await self._apply(
                lambda items: self._resolve(items, op.target_id, created)
            )
            report.resolved_ids[op.target_id] = created.id
        elif op.kind == OperationKind.UPDATE:
            updated = await self._send_update(record)
            await self._queue.ack(op.operation_id)
            await self._apply(lambda items: _merge_into(items, updated))
        else:
            try:
                await self._send_delete(op.target_id)
            except HTTPError as e:
                if e.status_code != 404:
                    raise
                logger.debug(f"{self.config.name} {op.target_id} already gone on server")
            await self._queue.ack(op.operation_id)
            await self._apply(lambda items: _without(items, op.target_id))

    def _resolve(self, items: list[T], temp_id: int, created: T) -> list[T]:
        """Swap in the server record, then re-apply changes queued for it meanwhile."""
        return self._overlay_pending(self._reconciler.resolve_temp_id(items, temp_id, created))

    async def clear(self) -> None:
        """Forget cached items and queued operations (logout)."""
        await self._cache.invalidate(self.key)
        await self._queue.clear()

    # Helpers

    def _validate(self, record: T) -> None:
        for name in self.config.required_fields:
            value = getattr(record, name, None)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise ValidationError(f"{self.config.name}: '{name}' is required")

    def _allows_offline(self, kind: OperationKind) -> bool:
        return kind in self.config.offline_operations

    def _check_offline_allowed(self, kind: OperationKind) -> None:
        if not self._reachability.is_online and not self._allows_offline(kind):
            logger.warning(f"{kind.value} on '{self.config.name}' requires a connection")
            raise NetworkUnavailableError(
                f"{self.config.name}: {kind.value} is not available offline"
            )

    def _should_defer(self, record_id: int) -> bool:
        """Offline, a temporary id, or earlier changes still queued for the entity."""
        return (
            not self._reachability.is_online
            or record_id < 0
            or bool(self._queue.operations_for(record_id))
        )

    async def _enqueue(self, kind: OperationKind, record: T) -> None:
        await self._queue.enqueue(
            PendingOperation(target_id=record.id, kind=kind, payload=record.local_dump())
        )

    async def _apply(self, change: Callable[[list[T]], list[T]]) -> list[T]:
        async with self._mutation_lock:
            items = change(await self.items())
            await self._cache.write(self.key, items)
            return items

    def _url(self, path: str, item_id: int | None = None) -> str:
        return self._base_url + path.format(
            owner_id=self.owner_id, item_id=item_id, **self._path_params
        )

    async def _send_create(self, record: T) -> T:
        response = await self._pipeline.send(
            RequestDescriptor("POST", self._url(self.config.list_path), json_data=record.wire_dump()),
            ApiResponse[self.config.model],  # type: ignore[name-defined]
        )
        return response.data

    async def _send_update(self, record: T) -> T:
        response = await self._pipeline.send(
            RequestDescriptor(
                self.config.update_method,
                self._url(self.config.item_path, record.id),
                json_data=record.wire_dump(),
            ),
            ApiResponse[self.config.model],  # type: ignore[name-defined]
        )
        return response.data

    async def _send_delete(self, record_id: int) -> None:
        await self._pipeline.send(
            RequestDescriptor("DELETE", self._url(self.config.item_path, record_id)),
            NoContent,
        )


def _find(items: list[T], record_id: int) -> T | None:
    return next((item for item in items if item.id == record_id), None)


def _index_of(items: list[T], record_id: int) -> int | None:
    return next((i for i, item in enumerate(items) if item.id == record_id), None)


def _without(items: list[T], record_id: int) -> list[T]:
    return [item for item in items if item.id != record_id]


def _replace(items: list[T], record: T) -> list[T]:
    return [record if item.id == record.id else item for item in items]


def _merge_into(items: list[T], record: T) -> list[T]:
    index = _index_of(items, record.id)
    if index is None:
        return items + [record]
    result = list(items)
    result[index] = record.carry_local_fields(items[index])
    return result


def _insert(items: list[T], index: int, record: T) -> list[T]:
    result = _without(items, record.id)
    result.insert(min(index, len(result)), record)
    return result
