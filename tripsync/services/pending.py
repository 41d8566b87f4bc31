"""
PendingOperationQueue - durable FIFO log of mutations made while offline.

Every enqueue/ack rewrites the log in the persistent store, so queued
work survives an app restart. The log is namespaced per collection to
keep trips from interfering with each other.

Compaction while a create is still queued for an entity:
- an update folds into the create's payload
- a delete cancels the create (and everything queued after it); nothing
  is ever sent for that entity

A create queued after changes to its own temporary id (they were made
while the create was in flight) absorbs them the same way.
"""

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, AsyncIterator

from loguru import logger
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

if TYPE_CHECKING:
    from tripsync.datastore.store import PersistentStore


class OperationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class PendingOperation(BaseModel):
    """A logged, not yet acknowledged write."""

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    target_id: int
    kind: OperationKind
    payload: dict[str, Any] = Field(default_factory=dict)
    enqueued_at: datetime = Field(default_factory=datetime.now)


class PendingOperationQueue:
    """
    Usage:
        queue = PendingOperationQueue(store, namespace="packing_items:trip:12")
        await queue.load()

        await queue.enqueue(PendingOperation(target_id=-1, kind=OperationKind.CREATE,
                                             payload=item.local_dump()))

        async for op in queue.drain():
            if await replay(op):
                await queue.ack(op.operation_id)
    """

    def __init__(self, store: "PersistentStore", namespace: str, debug: bool = False):
        self._store = store
        self._namespace = namespace
        self._debug = debug
        self._ops: list[PendingOperation] = []
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def store_key(self) -> str:
        return f"pending:{self._namespace}"

    @property
    def namespace(self) -> str:
        return self._namespace

    def __len__(self) -> int:
        return len(self._ops)

    @property
    def operations(self) -> list[PendingOperation]:
        return list(self._ops)

    def operations_for(self, target_id: int) -> list[PendingOperation]:
        return [op for op in self._ops if op.target_id == target_id]

    async def load(self) -> list[PendingOperation]:
        """Read the persisted log once; later calls return the in-memory log."""
        async with self._lock:
            if self._loaded:
                return list(self._ops)

            raw = await self._store.get_json(self.store_key) or []
            ops = []
            for record in raw:
                try:
                    ops.append(PendingOperation.model_validate(record))
                except PydanticValidationError as e:
                    logger.error(f"Dropping unreadable pending operation in '{self.store_key}': {e}")
            self._ops = ops
            self._loaded = True

        if self._ops:
            logger.info(f"Loaded {len(self._ops)} pending operations for '{self._namespace}'")
        return list(self._ops)

    async def enqueue(self, op: PendingOperation) -> PendingOperation | None:
        """
        Append an operation (after compaction).

        Returns:
            The operation now holding the change, or None when the change
            cancelled a queued create and nothing remains to replay
        """
        await self.load()
        async with self._lock:
            queued_create = next(
                (
                    queued
                    for queued in self._ops
                    if queued.target_id == op.target_id and queued.kind == OperationKind.CREATE
                ),
                None,
            )

            if queued_create is not None and op.kind == OperationKind.UPDATE:
                queued_create.payload = op.payload
                result: PendingOperation | None = queued_create
                self._log(f"FOLD: update of {op.target_id} into queued create")
            elif queued_create is not None and op.kind == OperationKind.DELETE:
                self._ops = [queued for queued in self._ops if queued.target_id != op.target_id]
                result = None
                self._log(f"CANCEL: {op.target_id} created and deleted offline")
            elif op.kind == OperationKind.CREATE and self.operations_for(op.target_id):
                result = self._absorb_into_create(op)
            else:
                self._ops.append(op)
                result = op
                self._log(f"ENQUEUE: {op.kind.value} {op.target_id}")

            await self._persist()

        logger.info(
            f"Queued {op.kind.value} for {op.target_id} in '{self._namespace}' "
            f"({len(self._ops)} pending)"
        )
        return result

    async def drain(self) -> AsyncIterator[PendingOperation]:
        """
        Yield queued operations in enqueue order.

        Iterates over a snapshot; operations acked or cancelled meanwhile
        are skipped. Nothing is removed here, only ack() removes.
        """
        await self.load()
        for op in list(self._ops):
            if any(queued.operation_id == op.operation_id for queued in self._ops):
                yield op

    async def ack(self, operation_id: str) -> bool:
        """Remove a successfully replayed operation."""
        async with self._lock:
            before = len(self._ops)
            self._ops = [op for op in self._ops if op.operation_id != operation_id]
            removed = len(self._ops) != before
            if removed:
                await self._persist()
        self._log(f"ACK: {operation_id} (removed={removed})")
        return removed

    async def retarget(self, old_id: int, new_id: int) -> int:
        """Point queued operations at the server id once a create is acknowledged."""
        async with self._lock:
            count = 0
            for op in self._ops:
                if op.target_id == old_id:
                    op.target_id = new_id
                    if "id" in op.payload:
                        op.payload["id"] = new_id
                    count += 1
            if count:
                await self._persist()
        if count:
            self._log(f"RETARGET: {count} operations {old_id} -> {new_id}")
        return count

    async def discard(self, target_id: int) -> int:
        """Drop every operation queued for target_id (a rolled-back create)."""
        async with self._lock:
            before = len(self._ops)
            self._ops = [op for op in self._ops if op.target_id != target_id]
            removed = before - len(self._ops)
            if removed:
                await self._persist()
        if removed:
            self._log(f"DISCARD: {removed} operations for {target_id}")
        return removed

    async def clear(self) -> None:
        async with self._lock:
            self._ops = []
            self._loaded = True
            await self._store.delete(self.store_key)
        self._log("CLEAR")

    def _absorb_into_create(self, create: PendingOperation) -> PendingOperation | None:
        earlier = self.operations_for(create.target_id)
        self._ops = [queued for queued in self._ops if queued.target_id != create.target_id]
        if any(queued.kind == OperationKind.DELETE for queued in earlier):
            self._log(f"CANCEL: {create.target_id} deleted while its create was in flight")
            return None

        updates = [queued for queued in earlier if queued.kind == OperationKind.UPDATE]
        if updates:
            create.payload = updates[-1].payload
        self._ops.append(create)
        self._log(f"FOLD: {len(updates)} updates of {create.target_id} into late create")
        return create

    async def _persist(self) -> None:
        await self._store.set_json(
            self.store_key, [op.model_dump(mode="json") for op in self._ops]
        )

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[PendingQueue:{self._namespace}] {message}")
