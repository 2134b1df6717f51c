"""
Background delivery bridge.

Abstracts the platform facility that can run the drain logic later, outside
the foreground process, and the channel that background runs use to report
back to the foreground.
"""

import json
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

from personal_health_sync.infrastructure.platform.connectivity import ConnectivityMonitor
from personal_health_sync.infrastructure.storage.key_value_store import KeyValueStore
from personal_health_sync.utils.exceptions import PersonalHealthSyncError, StorageError

logger = logging.getLogger(__name__)

DEFERRED_RUNS_KEY = "deferred_runs"
NOTIFICATIONS_KEY = "sync_notifications"

ForegroundHandler = Callable[[dict[str, Any]], None]


class DeferredRunRequester(Protocol):
    """Registers interest in a later, platform-triggered drain pass."""

    def register(self, tag: str) -> bool: ...

    def pending(self) -> list[str]: ...

    def complete(self, tag: str) -> None: ...


class NullDeferredRunRequester:
    """Used where the platform offers no deferred execution."""

    def register(self, tag: str) -> bool:
        return False

    def pending(self) -> list[str]:
        return []

    def complete(self, tag: str) -> None:
        return None


class StoredDeferredRunRequester:
    """
    Deferred runs recorded in durable storage.

    A scheduler (cron, a systemd timer, a mobile background task) invokes the
    ``flush`` command, which consumes these tags.
    """

    def __init__(self, storage: KeyValueStore) -> None:
        self.storage = storage
        self._lock = threading.Lock()

    def _read(self) -> list[str]:
        raw = self.storage.get_text(DEFERRED_RUNS_KEY)
        if not raw:
            return []
        try:
            tags = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Deferred run registry is corrupt, resetting")
            return []
        return [str(tag) for tag in tags] if isinstance(tags, list) else []

    def register(self, tag: str) -> bool:
        with self._lock:
            tags = self._read()
            if tag not in tags:
                tags.append(tag)
                self.storage.set_text(DEFERRED_RUNS_KEY, json.dumps(tags))
        return True

    def pending(self) -> list[str]:
        with self._lock:
            return self._read()

    def complete(self, tag: str) -> None:
        with self._lock:
            tags = self._read()
            if tag in tags:
                tags.remove(tag)
                self.storage.set_text(DEFERRED_RUNS_KEY, json.dumps(tags))


class BackgroundDeliveryBridge:
    """
    Connectivity, deferred execution and foreground notification in one seam.

    Every method degrades to False or a no-op when the underlying facility is
    missing or failing; none of them raise for that reason.
    """

    def __init__(
        self,
        connectivity: ConnectivityMonitor,
        requester: DeferredRunRequester | None = None,
        mailbox: KeyValueStore | None = None,
    ) -> None:
        """
        Initialize background delivery bridge.

        Args:
            connectivity: Connectivity monitor.
            requester: Deferred run facility; defaults to a no-op.
            mailbox: Store for notices addressed to a foreground in another
                process. Without it, notices only reach in-process handlers.
        """
        self.connectivity = connectivity
        self.requester: DeferredRunRequester = requester or NullDeferredRunRequester()
        self.mailbox = mailbox
        self._handlers: list[ForegroundHandler] = []
        self._lock = threading.Lock()

    def is_connected(self) -> bool:
        try:
            return bool(self.connectivity.is_online())
        except Exception:
            logger.exception("Connectivity check failed, assuming offline")
            return False

    def request_deferred_run(self, tag: str) -> bool:
        """
        Ask the platform to run the drain logic later.

        Returns:
            True if a deferred run was registered.
        """
        try:
            registered = self.requester.register(tag)
        except PersonalHealthSyncError as e:
            logger.error(f"Deferred run registration failed: {e}")
            return False

        if registered:
            logger.info(f"Background sync scheduled: {tag}")
        else:
            logger.debug("Deferred runs are not supported on this platform")
        return registered

    def pending_runs(self) -> list[str]:
        try:
            return self.requester.pending()
        except PersonalHealthSyncError as e:
            logger.error(f"Could not read deferred runs: {e}")
            return []

    def complete_run(self, tag: str) -> None:
        try:
            self.requester.complete(tag)
        except PersonalHealthSyncError as e:
            logger.error(f"Could not clear deferred run {tag}: {e}")

    def add_foreground_handler(self, handler: ForegroundHandler) -> Callable[[], None]:
        """
        Register an in-process receiver of background notices.

        Returns:
            Callable that removes the handler.
        """
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return unsubscribe

    def notify_foreground_of_payload(self, payload: dict[str, Any]) -> bool:
        """
        Hand a notice from a background run to the foreground.

        Returns:
            True if an in-process handler received it, or, failing that, it
            was left in the mailbox.
        """
        with self._lock:
            handlers = list(self._handlers)

        delivered = False
        for handler in handlers:
            try:
                handler(payload)
                delivered = True
            except Exception:
                logger.exception("Foreground handler failed")

        if delivered or self.mailbox is None:
            return delivered

        try:
            notices = self._read_mailbox()
            notices.append(payload)
            self.mailbox.set_text(NOTIFICATIONS_KEY, json.dumps(notices, default=str))
        except StorageError as e:
            logger.error(f"Could not post foreground notice: {e}")
            return False
        return True

    def _read_mailbox(self) -> list[dict[str, Any]]:
        if self.mailbox is None:
            return []
        raw = self.mailbox.get_text(NOTIFICATIONS_KEY)
        if not raw:
            return []
        try:
            notices = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Foreground mailbox is corrupt, discarding")
            return []
        return [n for n in notices if isinstance(n, dict)] if isinstance(notices, list) else []

    def drain_foreground_mailbox(self) -> list[dict[str, Any]]:
        """
        Take every notice posted for a foreground in another process.

        Returns:
            Notices in posting order; the mailbox is emptied.
        """
        if self.mailbox is None:
            return []
        try:
            notices = self._read_mailbox()
            if notices:
                self.mailbox.remove(NOTIFICATIONS_KEY)
            return notices
        except StorageError as e:
            logger.error(f"Could not read foreground mailbox: {e}")
            return []
