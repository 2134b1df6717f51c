"""Unit tests for the durable sync queue."""

import json
from pathlib import Path

import pytest

from personal_health_sync.infrastructure.storage.key_value_store import (
    FileKeyValueStore,
    MemoryKeyValueStore,
)
from personal_health_sync.services.sync_queue import CORRUPT_QUEUE_KEY, SYNC_QUEUE_KEY, SyncQueue
from personal_health_sync.utils.exceptions import StorageError


class FailingStore(MemoryKeyValueStore):
    """Memory store whose writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_writes = False

    def set(self, key: str, value: bytes) -> None:
        if self.fail_writes:
            raise StorageError("disk full")
        super().set(key, value)


def test_enqueue_persists_before_returning() -> None:
    """Test an enqueued item is visible to a fresh queue over the same store."""
    storage = MemoryKeyValueStore()
    queue = SyncQueue(storage)

    item_id = queue.enqueue("measurement", {"id": "m1", "sys": 120, "dia": 80})

    reloaded = SyncQueue(storage).load_from_storage()
    if [item.id for item in reloaded] != [item_id]:
        raise AssertionError(f"Expected [{item_id}], got {[item.id for item in reloaded]}")

    item = reloaded[0]
    if item.kind != "measurement" or item.retry_count != 0:
        raise AssertionError(f"Unexpected item: {item}")
    if item.payload.get("lastModified") != item.enqueued_at:
        raise AssertionError("Payload should be stamped with the enqueue time")
    if not item_id.startswith("measurement_"):
        raise AssertionError(f"Unexpected id format: {item_id}")


def test_enqueue_does_not_mutate_caller_data() -> None:
    """Test the caller's dict is copied before stamping."""
    data = {"id": "m1"}
    SyncQueue(MemoryKeyValueStore()).enqueue("measurement", data)

    if "lastModified" in data:
        raise AssertionError("Caller data was modified")


def test_fifo_order_and_removal(tmp_path: Path) -> None:
    """Test FIFO order survives enqueue/remove sequences and restarts."""
    storage = FileKeyValueStore(tmp_path)
    queue = SyncQueue(storage)
    first = queue.enqueue("measurement", {"id": "a"})
    second = queue.enqueue("measurement", {"id": "b"})
    third = queue.enqueue("context-factors", {"id": "c"})

    if not queue.remove(second):
        raise AssertionError("Expected removal of a queued item to succeed")
    if queue.remove("missing"):
        raise AssertionError("Removing an unknown id should return False")

    reloaded = SyncQueue(FileKeyValueStore(tmp_path)).load_from_storage()
    if [item.id for item in reloaded] != [first, third]:
        raise AssertionError(f"Unexpected order after restart: {[i.id for i in reloaded]}")


def test_stored_format_uses_camel_case() -> None:
    """Test the persisted JSON uses the stable field names."""
    storage = MemoryKeyValueStore()
    SyncQueue(storage).enqueue("measurement", {"id": "m1"}, offline_origin=True)

    stored = json.loads(storage.get_text(SYNC_QUEUE_KEY) or "[]")
    expected = {"id", "kind", "payload", "enqueuedAt", "retryCount", "offlineOrigin"}
    if set(stored[0]) != expected:
        raise AssertionError(f"Unexpected stored fields: {sorted(stored[0])}")
    if stored[0]["offlineOrigin"] is not True:
        raise AssertionError("offlineOrigin flag not persisted")


def test_retry_counter() -> None:
    """Test retry increments and resets are persisted."""
    storage = MemoryKeyValueStore()
    queue = SyncQueue(storage)
    item_id = queue.enqueue("measurement", {"id": "m1"})

    if queue.increment_retry(item_id) != 1 or queue.increment_retry(item_id) != 2:
        raise AssertionError("Retry counter should count up from zero")
    if queue.increment_retry("missing") is not None:
        raise AssertionError("Unknown id should return None")

    reloaded = SyncQueue(storage).load_from_storage()
    if reloaded[0].retry_count != 2:
        raise AssertionError(f"Expected persisted retry count 2, got {reloaded[0].retry_count}")

    if queue.reset_retries([item_id]) != 1:
        raise AssertionError("Expected one item reset")
    if queue.list_pending()[0].retry_count != 0:
        raise AssertionError("Retry count should be back to zero")


def test_failed_write_leaves_state_unchanged() -> None:
    """Test a storage failure leaves memory and storage as they were."""
    storage = FailingStore()
    queue = SyncQueue(storage)
    kept = queue.enqueue("measurement", {"id": "m1"})
    before = storage.get(SYNC_QUEUE_KEY)

    storage.fail_writes = True
    with pytest.raises(StorageError):
        queue.enqueue("measurement", {"id": "m2"})
    with pytest.raises(StorageError):
        queue.remove(kept)

    if [item.id for item in queue.list_pending()] != [kept]:
        raise AssertionError(f"In-memory queue changed: {queue.list_pending()}")
    if storage.get(SYNC_QUEUE_KEY) != before:
        raise AssertionError("Stored queue changed after a failed write")


def test_corrupt_queue_is_quarantined() -> None:
    """Test unreadable queue data is moved aside instead of crashing."""
    storage = MemoryKeyValueStore()
    storage.set_text(SYNC_QUEUE_KEY, "{not a list")

    items = SyncQueue(storage).load_from_storage()

    if items != []:
        raise AssertionError(f"Expected empty queue, got {items}")
    if storage.get_text(CORRUPT_QUEUE_KEY) != "{not a list":
        raise AssertionError("Corrupt data should be preserved for inspection")
    if storage.contains(SYNC_QUEUE_KEY):
        raise AssertionError("Corrupt queue should be removed")


def test_mutations_reread_storage() -> None:
    """Test an item persisted by another writer survives this writer's changes."""
    storage = MemoryKeyValueStore()
    foreground = SyncQueue(storage)
    background = SyncQueue(storage)
    foreground.load_from_storage()

    other = background.enqueue("measurement", {"id": "m1"})
    mine = foreground.enqueue("measurement", {"id": "m2"})

    ids = [item.id for item in SyncQueue(storage).load_from_storage()]
    if ids != [other, mine]:
        raise AssertionError(f"Expected both items, got {ids}")


def test_clear() -> None:
    """Test clear empties memory and storage."""
    storage = MemoryKeyValueStore()
    queue = SyncQueue(storage)
    queue.enqueue("measurement", {"id": "m1"})

    queue.clear()

    if len(queue) != 0 or SyncQueue(storage).load_from_storage():
        raise AssertionError("Queue should be empty after clear")
