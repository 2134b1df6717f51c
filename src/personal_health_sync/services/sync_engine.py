"""
Sync engine for draining the durable queue.

Delivers queued mutations while online, applies the retry and abandonment
policy, asks the background bridge for a deferred run when work remains,
and publishes typed events to its listeners.
"""

import logging
from collections.abc import Callable
from typing import Any, Protocol

from pydantic import ValidationError

from personal_health_sync.domain.sync import (
    BackgroundSyncCompleteEvent,
    OfflineEvent,
    OnlineEvent,
    QueueClearedEvent,
    QueuedEvent,
    SyncCompleteEvent,
    SyncErrorEvent,
    SyncEvent,
    SyncItem,
    SyncStartEvent,
    SyncStatus,
)
from personal_health_sync.infrastructure.platform.background_bridge import BackgroundDeliveryBridge
from personal_health_sync.services.sync_queue import SyncQueue
from personal_health_sync.utils.exceptions import LockedError, PersonalHealthSyncError
from personal_health_sync.utils.parameters import SyncConfig

logger = logging.getLogger(__name__)

SyncListener = Callable[[SyncEvent], None]


class DeliveryTransport(Protocol):
    """Accepts one item or raises; must bound its own I/O with a timeout."""

    def deliver(self, item: SyncItem) -> None: ...


class SyncEngine:
    """
    Orchestrates delivery of queued items.

    Runs on a single thread of control. The ``_is_syncing`` flag is the only
    guard against overlapping drain passes: a pass requested while another
    is running is dropped, not queued.
    """

    def __init__(
        self,
        queue: SyncQueue,
        transport: DeliveryTransport,
        bridge: BackgroundDeliveryBridge,
        config: SyncConfig | None = None,
        foreground: bool = True,
    ) -> None:
        """
        Initialize sync engine.

        Args:
            queue: Durable queue of pending items.
            transport: Delivery collaborator.
            bridge: Background delivery bridge (connectivity included).
            config: Sync policy configuration.
            foreground: Whether this engine receives notices from background
                runs. A background agent's own engine must not.
        """
        self.queue = queue
        self.transport = transport
        self.bridge = bridge
        self.config = config or SyncConfig()
        self._is_syncing = False
        self._listeners: list[SyncListener] = []
        self._subscriptions: list[Callable[[], None]] = [
            bridge.connectivity.subscribe(self._on_connectivity_change),
        ]
        if foreground:
            self._subscriptions.append(
                bridge.add_foreground_handler(self.handle_background_sync_complete)
            )

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    def add_listener(self, callback: SyncListener) -> Callable[[], None]:
        """
        Subscribe to sync events.

        Returns:
            Callable that removes the listener.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def notify_listeners(self, event: SyncEvent) -> None:
        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Sync listener failed on {event.type} event")

    def queue_data(self, kind: str, data: dict[str, Any]) -> str:
        """
        Queue a mutation for delivery.

        When online with immediate sync on, the queue is drained right away.
        Otherwise a deferred run is requested and a ``queued`` event is
        emitted. The item stays durable either way.

        Args:
            kind: Mutation type.
            data: Mutation data.

        Returns:
            Identifier of the queued item.
        """
        online = self.bridge.is_connected()
        item_id = self.queue.enqueue(kind, data, offline_origin=not online)

        if online and self.config.sync_immediately:
            self.sync_now()
            return item_id

        self.bridge.request_deferred_run(self.config.deferred_run_tag)

        item = self.queue.get(item_id)
        if item is not None:
            self.notify_listeners(QueuedEvent(item=item))
        return item_id

    def sync_now(self) -> SyncCompleteEvent | None:
        """
        Run one drain pass over the queue.

        Never raises. Delivery failures become retry bookkeeping. A storage
        failure ends the pass with a ``sync-error`` event, and so do locked
        records, which leave every item queued with its retry count intact.

        Returns:
            The completion event, or None if the pass did not run or failed.
        """
        if self._is_syncing or not self.bridge.is_connected():
            return None

        self._is_syncing = True
        try:
            self.notify_listeners(SyncStartEvent())
            try:
                result = self._drain()
            except PersonalHealthSyncError as e:
                logger.error(f"Sync pass aborted: {e}")
                self.notify_listeners(SyncErrorEvent(message=str(e)))
                return None

            self.notify_listeners(result)
            return result
        finally:
            self._is_syncing = False

    def _drain(self) -> SyncCompleteEvent:
        items = self.queue.load_from_storage()
        synced: list[SyncItem] = []
        abandoned: list[SyncItem] = []

        logger.info(f"Syncing {len(items)} queued items")

        for item in items:
            try:
                self.transport.deliver(item)
            except LockedError:
                logger.warning(f"Records are locked, pausing sync at item {item.id}")
                self.queue.save_to_storage()
                self.bridge.request_deferred_run(self.config.deferred_run_tag)
                raise
            except Exception as e:
                logger.warning(f"Sync failed for item {item.id}: {e}")
                retry_count = self.queue.increment_retry(item.id)
                if retry_count is not None and retry_count >= self.config.max_retries:
                    self.queue.remove(item.id)
                    abandoned.append(item.with_retry_count(retry_count))
                    logger.error(f"Abandoned item {item.id} after {retry_count} attempts")
                continue

            self.queue.remove(item.id)
            synced.append(item)

        self.queue.save_to_storage()
        remaining = len(self.queue)

        if remaining > 0:
            self.bridge.request_deferred_run(self.config.deferred_run_tag)

        logger.info(
            f"Sync complete: {len(synced)} synced, {len(abandoned)} abandoned, {remaining} remaining"
        )
        return SyncCompleteEvent(synced=synced, failed=abandoned, remaining=remaining)

    def handle_online(self) -> None:
        logger.info("App is online, syncing")
        self.notify_listeners(OnlineEvent())
        self.sync_now()

    def handle_offline(self) -> None:
        logger.info("App is offline")
        self.notify_listeners(OfflineEvent())

    def _on_connectivity_change(self, online: bool) -> None:
        if online:
            self.handle_online()
        else:
            self.handle_offline()

    def handle_background_sync_complete(self, payload: dict[str, Any]) -> None:
        """
        React to a notice posted by a background delivery agent.

        The agent may have removed items, so the queue is reloaded before the
        notice is forwarded to listeners.
        """
        try:
            event = BackgroundSyncCompleteEvent.model_validate(payload)
        except ValidationError as e:
            logger.warning(f"Ignoring malformed background notice: {e}")
            return

        try:
            self.queue.load_from_storage()
        except PersonalHealthSyncError as e:
            logger.error(f"Could not reload queue after background sync: {e}")

        self.notify_listeners(event)

    def collect_background_notifications(self) -> int:
        """
        Process notices left by background runs in another process.

        Returns:
            Number of notices processed.
        """
        notices = self.bridge.drain_foreground_mailbox()
        for notice in notices:
            self.handle_background_sync_complete(notice)
        return len(notices)

    def get_status(self) -> SyncStatus:
        items = self.queue.list_pending()
        return SyncStatus(
            online=self.bridge.is_connected(),
            syncing=self._is_syncing,
            queue_length=len(items),
            queue=items,
        )

    def clear_queue(self) -> None:
        """Discard every pending item. Data queued so far is lost."""
        self.queue.clear()
        logger.warning("Sync queue cleared")
        self.notify_listeners(QueueClearedEvent())

    def retry_failed(self) -> SyncCompleteEvent | None:
        """Reset retry counters of items that have failed before, then sync."""
        self.queue.load_from_storage()
        failed_ids = [item.id for item in self.queue.list_pending() if item.retry_count > 0]
        if failed_ids:
            self.queue.reset_retries(failed_ids)
        return self.sync_now()

    def close(self) -> None:
        """Detach from connectivity and bridge notifications."""
        for unsubscribe in self._subscriptions:
            unsubscribe()
        self._subscriptions = []
