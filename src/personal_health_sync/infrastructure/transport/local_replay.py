"""
Local replay transport.

Delivers sync items into the local record store instead of a server,
routing each item by kind and resolving conflicts by last writer wins.
"""

import logging

from personal_health_sync.domain.sync import SyncItem
from personal_health_sync.services.conflict_resolution import apply_record
from personal_health_sync.services.record_store import EncryptedRecordStore
from personal_health_sync.utils.exceptions import (
    DeliveryError,
    LockedError,
    PersonalHealthSyncError,
)

logger = logging.getLogger(__name__)


class LocalReplayTransport:
    """Applies queued mutations to the encrypted record store."""

    def __init__(
        self,
        record_store: EncryptedRecordStore,
        routes: dict[str, str],
        key_field: str = "id",
    ) -> None:
        """
        Initialize local replay transport.

        Args:
            record_store: Store holding the record collections.
            routes: Mapping of item kind to record name.
            key_field: Payload field identifying the logical record.
        """
        self.record_store = record_store
        self.routes = dict(routes)
        self.key_field = key_field

    def deliver(self, item: SyncItem) -> None:
        """
        Apply one item.

        Raises:
            DeliveryError: If the item cannot be routed or the store refuses it.
            LockedError: If the records are encrypted and not unlocked. This is
                not a delivery failure and must not consume a retry.
        """
        record_name = self.routes.get(item.kind)
        if record_name is None:
            raise DeliveryError(f"Unknown sync kind: {item.kind}")
        if self.key_field not in item.payload:
            raise DeliveryError(f"Item {item.id} has no {self.key_field} field")

        try:
            records = self.record_store.load(record_name) or []
            if not isinstance(records, list):
                raise DeliveryError(f"Record {record_name} is not a collection")

            updated, stored = apply_record(records, item.payload, self.key_field)
            if stored:
                self.record_store.save(record_name, updated)
                logger.debug(f"Applied {item.id} to {record_name}")
            else:
                logger.info(f"Kept newer local version over {item.id}")
        except (DeliveryError, LockedError):
            raise
        except PersonalHealthSyncError as e:
            raise DeliveryError(f"Failed to apply {item.id}: {e}") from e
