"""
Connectivity monitors.

A monitor answers "are we online?" and notifies subscribers on every
transition, which the sync engine uses to start a drain pass.
"""

import logging
import threading
from collections.abc import Callable
from typing import Protocol

import httpx

from personal_health_sync.utils.exceptions import ConfigurationError
from personal_health_sync.utils.parameters import ConnectivityConfig

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], None]


class ConnectivityMonitor(Protocol):
    """Observable connectivity flag."""

    def is_online(self) -> bool: ...

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]: ...


class _ListenerSet:
    def __init__(self) -> None:
        self._listeners: list[ConnectivityListener] = []
        self._lock = threading.Lock()

    def add(self, listener: ConnectivityListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def fire(self, online: bool) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(online)
            except Exception:
                logger.exception("Connectivity listener failed")


class ManualConnectivityMonitor:
    """Connectivity flag driven by the host application (or a test)."""

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._listeners = _ListenerSet()

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    def set_online(self, online: bool) -> None:
        """Update the flag; subscribers hear only about real transitions."""
        if online == self._online:
            return
        self._online = online
        logger.info(f"Connectivity changed: {'online' if online else 'offline'}")
        self._listeners.fire(online)


class HttpConnectivityMonitor:
    """
    Connectivity detected by probing an HTTP endpoint.

    Any response counts as online; transport errors and timeouts count as
    offline. Call poll() periodically to refresh the flag.
    """

    def __init__(
        self,
        probe_url: str,
        timeout_seconds: float = 3.0,
        client: httpx.Client | None = None,
    ) -> None:
        """
        Initialize the HTTP monitor.

        Args:
            probe_url: URL to send HEAD requests to.
            timeout_seconds: Probe timeout.
            client: Optional preconfigured httpx client.
        """
        self.probe_url = probe_url
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=timeout_seconds)
        self._online = False
        self._listeners = _ListenerSet()

    def is_online(self) -> bool:
        return self._online

    def subscribe(self, listener: ConnectivityListener) -> Callable[[], None]:
        return self._listeners.add(listener)

    def poll(self) -> bool:
        """
        Probe the endpoint and notify subscribers if the state changed.

        Returns:
            Current connectivity.
        """
        try:
            self.client.head(self.probe_url)
            online = True
        except httpx.HTTPError as e:
            logger.debug(f"Connectivity probe failed: {e}")
            online = False

        if online != self._online:
            self._online = online
            self._listeners.fire(online)
        return online

    def close(self) -> None:
        if self._owns_client:
            self.client.close()


def create_connectivity_monitor(
    config: ConnectivityConfig,
) -> ManualConnectivityMonitor | HttpConnectivityMonitor:
    """
    Build the monitor selected by configuration.

    Args:
        config: Connectivity configuration.

    Returns:
        Connectivity monitor instance.
    """
    if config.mode == "http":
        if not config.probe_url:
            raise ConfigurationError("connectivity.probe_url is required in http mode")
        monitor = HttpConnectivityMonitor(config.probe_url, config.probe_timeout_seconds)
        monitor.poll()
        return monitor
    return ManualConnectivityMonitor(online=config.assume_online)
