"""Unit tests for the background bridge and delivery agent."""

from collections.abc import Callable

from personal_health_sync.domain.sync import SyncEvent, SyncItem
from personal_health_sync.infrastructure.platform.background_bridge import (
    NOTIFICATIONS_KEY,
    BackgroundDeliveryBridge,
    NullDeferredRunRequester,
    StoredDeferredRunRequester,
)
from personal_health_sync.infrastructure.platform.connectivity import ManualConnectivityMonitor
from personal_health_sync.infrastructure.storage.key_value_store import MemoryKeyValueStore
from personal_health_sync.services.background_agent import BackgroundDeliveryAgent
from personal_health_sync.services.sync_engine import SyncEngine
from personal_health_sync.services.sync_queue import SyncQueue
from personal_health_sync.utils.exceptions import DeliveryError


class RecordingTransport:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.delivered: list[SyncItem] = []

    def deliver(self, item: SyncItem) -> None:
        if self.fail:
            raise DeliveryError("server down")
        self.delivered.append(item)


class FlakyConnectivity:
    def is_online(self) -> bool:
        raise OSError("no network stack")

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return lambda: None


def make_bridge(storage: MemoryKeyValueStore, online: bool) -> BackgroundDeliveryBridge:
    return BackgroundDeliveryBridge(
        ManualConnectivityMonitor(online=online),
        requester=StoredDeferredRunRequester(storage),
        mailbox=storage,
    )


def test_null_requester_degrades() -> None:
    """Test the bridge reports False when deferred runs are unsupported."""
    bridge = BackgroundDeliveryBridge(ManualConnectivityMonitor(), NullDeferredRunRequester())

    if bridge.request_deferred_run("blood-pressure-sync"):
        raise AssertionError("Null requester should not register runs")
    if bridge.pending_runs() != []:
        raise AssertionError("Null requester should have no pending runs")


def test_connectivity_errors_mean_offline() -> None:
    """Test a failing connectivity source reads as offline instead of raising."""
    bridge = BackgroundDeliveryBridge(FlakyConnectivity())

    if bridge.is_connected():
        raise AssertionError("Failing connectivity check should read as offline")


def test_deferred_runs_are_deduplicated() -> None:
    """Test registering the same tag twice keeps one entry."""
    storage = MemoryKeyValueStore()
    bridge = make_bridge(storage, online=False)

    bridge.request_deferred_run("blood-pressure-sync")
    bridge.request_deferred_run("blood-pressure-sync")

    if bridge.pending_runs() != ["blood-pressure-sync"]:
        raise AssertionError(f"Unexpected pending runs: {bridge.pending_runs()}")

    bridge.complete_run("blood-pressure-sync")
    if bridge.pending_runs():
        raise AssertionError("Completed run should be cleared")


def test_notice_goes_to_handler_or_mailbox() -> None:
    """Test in-process handlers take precedence over the mailbox."""
    storage = MemoryKeyValueStore()
    bridge = make_bridge(storage, online=True)
    received: list[dict] = []
    unsubscribe = bridge.add_foreground_handler(received.append)

    bridge.notify_foreground_of_payload({"type": "background-sync-complete", "synced_count": 1})

    if len(received) != 1 or storage.contains(NOTIFICATIONS_KEY):
        raise AssertionError("Handled notice must not also be written to the mailbox")

    unsubscribe()
    bridge.notify_foreground_of_payload({"type": "background-sync-complete", "synced_count": 2})

    notices = bridge.drain_foreground_mailbox()
    if [n["synced_count"] for n in notices] != [2]:
        raise AssertionError(f"Expected mailbox notice, got {notices}")
    if bridge.drain_foreground_mailbox():
        raise AssertionError("Mailbox should be empty after draining")


def test_agent_without_registration_does_nothing() -> None:
    """Test the agent only runs when a deferred run is registered."""
    storage = MemoryKeyValueStore()
    bridge = make_bridge(storage, online=True)
    transport = RecordingTransport()
    engine = SyncEngine(SyncQueue(storage), transport, bridge, foreground=False)

    if BackgroundDeliveryAgent(engine, bridge).run_pending() is not None:
        raise AssertionError("Expected no run without a registration")


def test_background_round_trip() -> None:
    """Test an offline enqueue is delivered by a separate agent and reported back."""
    storage = MemoryKeyValueStore()

    # Foreground process, offline
    foreground_bridge = make_bridge(storage, online=False)
    foreground = SyncEngine(SyncQueue(storage), RecordingTransport(), foreground_bridge)
    events: list[SyncEvent] = []
    foreground.add_listener(events.append)
    foreground.queue_data("measurement", {"id": "m1", "sys": 118, "dia": 76})

    # Background process, online
    background_bridge = make_bridge(storage, online=True)
    transport = RecordingTransport()
    background = SyncEngine(SyncQueue(storage), transport, background_bridge, foreground=False)
    result = BackgroundDeliveryAgent(background, background_bridge).run_pending()

    if result is None or len(result.synced) != 1 or result.remaining != 0:
        raise AssertionError(f"Unexpected background result: {result}")
    if len(transport.delivered) != 1:
        raise AssertionError("Background agent should have delivered the item")
    if background_bridge.pending_runs():
        raise AssertionError("Deferred run should be cleared once the queue is empty")

    processed = foreground.collect_background_notifications()

    if processed != 1:
        raise AssertionError(f"Expected one notice, got {processed}")
    if events[-1].type != "background-sync-complete" or events[-1].synced_count != 1:
        raise AssertionError(f"Unexpected last event: {events[-1]}")
    if len(foreground.queue) != 0:
        raise AssertionError("Foreground queue should be reloaded after the notice")


def test_agent_keeps_registration_while_work_remains() -> None:
    """Test a failed background pass leaves the deferred run registered."""
    storage = MemoryKeyValueStore()
    bridge = make_bridge(storage, online=True)
    SyncQueue(storage).enqueue("measurement", {"id": "m1"})
    bridge.request_deferred_run("blood-pressure-sync")
    engine = SyncEngine(SyncQueue(storage), RecordingTransport(fail=True), bridge, foreground=False)

    result = BackgroundDeliveryAgent(engine, bridge).run_pending()

    if result is None or result.remaining != 1:
        raise AssertionError(f"Expected one remaining item, got {result}")
    if bridge.pending_runs() != ["blood-pressure-sync"]:
        raise AssertionError("Deferred run should stay registered")


def test_agent_waits_for_connectivity() -> None:
    """Test the agent does not drain while offline."""
    storage = MemoryKeyValueStore()
    bridge = make_bridge(storage, online=False)
    bridge.request_deferred_run("blood-pressure-sync")
    transport = RecordingTransport()
    engine = SyncEngine(SyncQueue(storage), transport, bridge, foreground=False)

    if BackgroundDeliveryAgent(engine, bridge).run_pending(force=True) is not None:
        raise AssertionError("Agent should not run while offline")
    if bridge.pending_runs() != ["blood-pressure-sync"]:
        raise AssertionError("Registration should be kept for the next wake-up")
