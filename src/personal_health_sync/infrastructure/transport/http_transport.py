"""
HTTP delivery transport.

Posts each sync item to a remote endpoint that accepts a record and
answers with success or failure.
"""

import logging

import httpx

from personal_health_sync.domain.sync import SyncItem
from personal_health_sync.utils.exceptions import DeliveryError

logger = logging.getLogger(__name__)


class HttpDeliveryTransport:
    """
    Delivery over HTTP with a bounded timeout.

    Timeouts, connection errors and non-2xx responses all surface as
    DeliveryError, so the engine treats them the same way.
    """

    def __init__(
        self,
        endpoint_url: str,
        timeout_seconds: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize HTTP transport.

        Args:
            endpoint_url: URL accepting POSTed items.
            timeout_seconds: Per-request timeout.
            client: Optional preconfigured httpx client.
        """
        self.endpoint_url = endpoint_url
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout_seconds)

    def deliver(self, item: SyncItem) -> None:
        """
        POST one item.

        Raises:
            DeliveryError: If the request fails or is rejected.
        """
        try:
            response = self.client.post(self.endpoint_url, json=item.to_storage_dict())
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise DeliveryError(f"Timed out delivering {item.id}") from e
        except httpx.HTTPStatusError as e:
            raise DeliveryError(
                f"Server rejected {item.id} with status {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"Failed to deliver {item.id}: {e}") from e

        logger.debug(f"Delivered {item.id} to {self.endpoint_url}")

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
