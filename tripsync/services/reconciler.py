"""
Reconciler - merges freshly fetched collections into cached ones.

The server is authoritative for existence: records missing from the
fetch are dropped. Records present on both sides are replaced only when
their content changed, so unchanged records keep their identity and do
not cause UI churn. Local-only fields always survive a replacement.
"""

from typing import Generic, TypeVar

from loguru import logger

from tripsync.models import SyncRecord

T = TypeVar("T", bound=SyncRecord)


class Reconciler(Generic[T]):
    """
    Usage:
        reconciler = Reconciler()
        merged = reconciler.merge(cached_items, fetched_items)
        merged = reconciler.resolve_temp_id(merged, -1, server_item)
    """

    def merge(self, current: list[T], fetched: list[T]) -> list[T]:
        """
        Merge fetched into current.

        - only in current: dropped
        - in both: fetched version when content differs, else current kept
        - only in fetched: appended in fetched order

        Idempotent: merge(merge(c, f), f) == merge(c, f).
        """
        fetched_by_id = {item.id: item for item in fetched}
        current_ids = {item.id for item in current}

        merged: list[T] = []
        replaced = dropped = 0
        for item in current:
            incoming = fetched_by_id.get(item.id)
            if incoming is None:
                dropped += 1
                continue
            if item.same_content(incoming):
                merged.append(item)
            else:
                merged.append(incoming.carry_local_fields(item))
                replaced += 1

        added = [item for item in fetched if item.id not in current_ids]
        merged.extend(added)

        if replaced or dropped or added:
            logger.debug(
                f"Merged collection: {replaced} replaced, {dropped} dropped, {len(added)} added"
            )
        return merged

    def resolve_temp_id(self, items: list[T], temp_id: int, server_record: T) -> list[T]:
        """
        Swap the temp-id record for the server-assigned one, in place.

        Local-only fields of the temp record carry forward. If a refetch
        already brought the server record in, the temp record is removed
        and the existing entry updated, so no duplicate remains.
        """
        temp_record = next((item for item in items if item.id == temp_id), None)
        record = (
            server_record.carry_local_fields(temp_record)
            if temp_record is not None
            else server_record
        )

        result: list[T] = []
        placed = False
        for item in items:
            if item.id == temp_id or item.id == record.id:
                if not placed:
                    result.append(record)
                    placed = True
                continue
            result.append(item)

        if not placed:
            result.append(record)

        logger.debug(f"Resolved temporary id {temp_id} -> {record.id}")
        return result
