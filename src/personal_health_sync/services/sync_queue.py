"""
Durable FIFO queue of pending mutations.

The whole queue is stored as one JSON array under ``sync_queue``. Every
mutation re-reads that array, applies the change to a copy, writes it back
and only then replaces the in-memory list, so a failed write leaves both
storage and memory as they were.
"""

import json
import logging
import threading
from collections.abc import Callable, Iterable
from typing import Any

from pydantic import ValidationError

from personal_health_sync.domain.sync import LAST_MODIFIED_FIELD, SyncItem
from personal_health_sync.infrastructure.storage.key_value_store import KeyValueStore
from personal_health_sync.utils.hashing import generate_item_id
from personal_health_sync.utils.timezone_utils import now_millis

logger = logging.getLogger(__name__)

SYNC_QUEUE_KEY = "sync_queue"
CORRUPT_QUEUE_KEY = "sync_queue_corrupt"


class SyncQueue:
    """
    Ordered, durable list of SyncItems.

    Two processes may write the same queue (the foreground app and a
    background delivery agent). Writes are full rewrites: a rewrite racing
    another process can lose that process's retry increment, but never an
    item that was already persisted when this process re-read the queue.
    """

    def __init__(self, storage: KeyValueStore) -> None:
        """
        Initialize sync queue.

        Args:
            storage: Durable key-value store.
        """
        self.storage = storage
        self._items: list[SyncItem] = []
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._items)

    def _read(self) -> list[SyncItem]:
        raw = self.storage.get(SYNC_QUEUE_KEY)
        if raw is None:
            return []

        try:
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, list):
                raise ValueError("queue is not a JSON array")
            return [SyncItem.model_validate(entry) for entry in data]
        except (UnicodeDecodeError, ValueError, ValidationError) as e:
            logger.error(f"Stored sync queue is corrupt, moving it aside: {e}")
            self.storage.set(CORRUPT_QUEUE_KEY, raw)
            self.storage.remove(SYNC_QUEUE_KEY)
            return []

    def _write(self, items: list[SyncItem]) -> None:
        payload = json.dumps([item.to_storage_dict() for item in items], ensure_ascii=False)
        self.storage.set(SYNC_QUEUE_KEY, payload.encode("utf-8"))

    def _mutate(self, change: Callable[[list[SyncItem]], Any]) -> Any:
        with self._lock:
            items = self._read()
            result = change(items)
            self._write(items)
            self._items = items
            return result

    def load_from_storage(self) -> list[SyncItem]:
        """
        Replace the in-memory queue with the persisted one.

        Returns:
            The reloaded items in FIFO order.
        """
        with self._lock:
            self._items = self._read()
            logger.debug(f"Loaded {len(self._items)} queued items")
            return list(self._items)

    def save_to_storage(self) -> None:
        """Persist the in-memory queue as it stands."""
        with self._lock:
            self._write(self._items)

    def enqueue(
        self, kind: str, data: dict[str, Any], offline_origin: bool = False
    ) -> str:
        """
        Append a mutation and persist it before returning.

        Args:
            kind: Mutation type.
            data: Mutation data; copied, then stamped with lastModified.
            offline_origin: Whether the item was created while offline.

        Returns:
            The new item's identifier.
        """
        now = now_millis()
        payload = dict(data)
        payload[LAST_MODIFIED_FIELD] = now
        item = SyncItem(
            id=generate_item_id(kind),
            kind=kind,
            payload=payload,
            enqueued_at=now,
            retry_count=0,
            offline_origin=offline_origin,
        )

        def append(items: list[SyncItem]) -> None:
            items.append(item)

        self._mutate(append)
        logger.info(f"Queued {kind} item {item.id}")
        return item.id

    def get(self, item_id: str) -> SyncItem | None:
        """Look up an item in the in-memory queue."""
        with self._lock:
            for item in self._items:
                if item.id == item_id:
                    return item
            return None

    def list_pending(self) -> list[SyncItem]:
        """Return a snapshot of the queue in FIFO order."""
        with self._lock:
            return list(self._items)

    def remove(self, item_id: str) -> bool:
        """
        Remove an item and persist.

        Returns:
            True if the item was present.
        """

        def drop(items: list[SyncItem]) -> bool:
            for index, item in enumerate(items):
                if item.id == item_id:
                    del items[index]
                    return True
            return False

        return bool(self._mutate(drop))

    def increment_retry(self, item_id: str) -> int | None:
        """
        Count a failed delivery attempt and persist.

        Returns:
            The new retry count, or None if the item is no longer queued.
        """

        def bump(items: list[SyncItem]) -> int | None:
            for index, item in enumerate(items):
                if item.id == item_id:
                    items[index] = item.with_retry_count(item.retry_count + 1)
                    return items[index].retry_count
            return None

        result: int | None = self._mutate(bump)
        return result

    def reset_retries(self, item_ids: Iterable[str]) -> int:
        """
        Set the retry counter of the given items back to zero.

        Returns:
            Number of items reset.
        """
        wanted = set(item_ids)

        def reset(items: list[SyncItem]) -> int:
            count = 0
            for index, item in enumerate(items):
                if item.id in wanted and item.retry_count > 0:
                    items[index] = item.with_retry_count(0)
                    count += 1
            return count

        result: int = self._mutate(reset)
        return result

    def clear(self) -> None:
        """Discard every pending item."""
        with self._lock:
            self._write([])
            self._items = []
