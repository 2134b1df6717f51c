"""
Composition root.

Builds every service explicitly from configuration and hands out the
wired instances; nothing here is a module-level singleton.
"""

import logging
from dataclasses import dataclass, field
from typing import Any

from personal_health_sync.domain.sync import SyncCompleteEvent
from personal_health_sync.infrastructure.crypto.envelope_cipher import EnvelopeCipher
from personal_health_sync.infrastructure.platform.background_bridge import (
    BackgroundDeliveryBridge,
    StoredDeferredRunRequester,
)
from personal_health_sync.infrastructure.platform.connectivity import (
    ConnectivityMonitor,
    create_connectivity_monitor,
)
from personal_health_sync.infrastructure.storage.key_value_store import KeyValueStore, create_store
from personal_health_sync.infrastructure.transport.http_transport import HttpDeliveryTransport
from personal_health_sync.infrastructure.transport.local_replay import LocalReplayTransport
from personal_health_sync.services.background_agent import BackgroundDeliveryAgent
from personal_health_sync.services.key_manager import KeyMaterialManager
from personal_health_sync.services.record_store import EncryptedRecordStore
from personal_health_sync.services.sync_engine import DeliveryTransport, SyncEngine
from personal_health_sync.services.sync_queue import SyncQueue
from personal_health_sync.utils.exceptions import ConfigurationError
from personal_health_sync.utils.parameters import AppConfig

logger = logging.getLogger(__name__)


def create_transport(config: AppConfig, record_store: EncryptedRecordStore) -> DeliveryTransport:
    """
    Build the delivery transport selected by configuration.

    Raises:
        ConfigurationError: If http mode has no endpoint.
    """
    if config.transport.mode == "http":
        if not config.transport.endpoint_url:
            raise ConfigurationError("transport.endpoint_url is required in http mode")
        return HttpDeliveryTransport(config.transport.endpoint_url, config.transport.timeout_seconds)
    return LocalReplayTransport(record_store, config.sync.record_routes)


@dataclass
class HealthSyncRuntime:
    """Wired set of sync and encryption services for one process."""

    config: AppConfig
    storage: KeyValueStore
    cipher: EnvelopeCipher
    key_manager: KeyMaterialManager
    record_store: EncryptedRecordStore
    queue: SyncQueue
    connectivity: ConnectivityMonitor
    bridge: BackgroundDeliveryBridge
    transport: DeliveryTransport
    engine: SyncEngine
    _closed: bool = field(default=False, repr=False)

    @classmethod
    def build(
        cls,
        config: AppConfig,
        storage: KeyValueStore | None = None,
        connectivity: ConnectivityMonitor | None = None,
        transport: DeliveryTransport | None = None,
        foreground: bool = True,
    ) -> "HealthSyncRuntime":
        """
        Construct all services.

        Args:
            config: Application configuration.
            storage: Override for the durable store.
            connectivity: Override for the connectivity monitor.
            transport: Override for the delivery transport.
            foreground: False when building for a background delivery agent.

        Returns:
            Runtime with every service wired.
        """
        storage = storage if storage is not None else create_store(config.storage)
        cipher = EnvelopeCipher(config.crypto.pbkdf2_iterations)
        key_manager = KeyMaterialManager(storage, cipher)
        record_store = EncryptedRecordStore(
            storage, cipher, key_manager, config.crypto.record_names
        )
        key_manager.attach_record_store(record_store)

        queue = SyncQueue(storage)
        if connectivity is None:
            connectivity = create_connectivity_monitor(config.connectivity)
        bridge = BackgroundDeliveryBridge(
            connectivity,
            requester=StoredDeferredRunRequester(storage),
            mailbox=storage,
        )
        if transport is None:
            transport = create_transport(config, record_store)
        engine = SyncEngine(queue, transport, bridge, config.sync, foreground=foreground)

        logger.debug(f"Runtime built with {config.storage.backend} storage")
        return cls(
            config=config,
            storage=storage,
            cipher=cipher,
            key_manager=key_manager,
            record_store=record_store,
            queue=queue,
            connectivity=connectivity,
            bridge=bridge,
            transport=transport,
            engine=engine,
        )

    def start(self) -> SyncCompleteEvent | None:
        """Pick up background notices and drain once if online."""
        self.queue.load_from_storage()
        self.engine.collect_background_notifications()
        return self.engine.sync_now()

    def background_agent(self) -> BackgroundDeliveryAgent:
        return BackgroundDeliveryAgent(self.engine, self.bridge)

    def close(self) -> None:
        """Detach listeners, lock the session and close network clients."""
        if self._closed:
            return
        self.engine.close()
        self.key_manager.lock()
        for resource in (self.transport, self.connectivity):
            close: Any = getattr(resource, "close", None)
            if callable(close):
                close()
        self._closed = True
