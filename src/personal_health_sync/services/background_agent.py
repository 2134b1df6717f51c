"""
Background delivery agent.

Runs the sync engine's drain logic outside the foreground app, when the
platform wakes it up for a deferred run, and reports back to the foreground.
"""

import logging

from personal_health_sync.domain.sync import BackgroundSyncCompleteEvent, SyncCompleteEvent
from personal_health_sync.infrastructure.platform.background_bridge import BackgroundDeliveryBridge
from personal_health_sync.services.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class BackgroundDeliveryAgent:
    """
    Consumes deferred run registrations.

    The agent owns its own SyncEngine (built with ``foreground=False``) over
    the same durable queue the foreground app writes to.
    """

    def __init__(self, engine: SyncEngine, bridge: BackgroundDeliveryBridge) -> None:
        """
        Initialize background delivery agent.

        Args:
            engine: Engine used to drain the queue.
            bridge: Bridge holding the deferred run registrations.
        """
        self.engine = engine
        self.bridge = bridge

    def run_pending(self, force: bool = False) -> SyncCompleteEvent | None:
        """
        Run one drain pass if a deferred run is registered.

        Args:
            force: Drain even when no deferred run is registered.

        Returns:
            The completion event, or None if nothing ran.
        """
        tags = self.bridge.pending_runs()
        if not tags and not force:
            logger.info("No deferred sync runs registered")
            return None

        if not self.bridge.is_connected():
            logger.info("Still offline, leaving deferred sync runs registered")
            return None

        result = self.engine.sync_now()
        if result is None:
            return None

        if result.remaining == 0:
            for tag in tags:
                self.bridge.complete_run(tag)

        notice = BackgroundSyncCompleteEvent(
            synced_count=len(result.synced),
            remaining=result.remaining,
            tag=tags[0] if tags else None,
        )
        self.bridge.notify_foreground_of_payload(notice.model_dump())

        logger.info(
            f"Background sync finished: {len(result.synced)} synced, {result.remaining} remaining"
        )
        return result
