from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, List


logger = logging.getLogger("carequeue.sync.connectivity")

ConnectivityListener = Callable[[bool], None]


class ConnectivitySource(ABC):
    """Online/offline signal fed by an external network-state provider."""

    @abstractmethod
    def is_online(self) -> bool:
        ...

    @abstractmethod
    def subscribe(self, callback: ConnectivityListener) -> None:
        ...

    @abstractmethod
    def unsubscribe(self, callback: ConnectivityListener) -> None:
        ...


class ManualConnectivity(ConnectivitySource):
    """Connectivity state pushed in through :meth:`set_online`.

    Callbacks fire on transitions only, outside the internal lock.
    """

    def __init__(self, online: bool = False) -> None:
        self._online = bool(online)
        self._lock = threading.Lock()
        self._callbacks: List[ConnectivityListener] = []

    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, callback: ConnectivityListener) -> None:
        with self._lock:
            if callback not in self._callbacks:
                self._callbacks.append(callback)

    def unsubscribe(self, callback: ConnectivityListener) -> None:
        with self._lock:
            self._callbacks = [cb for cb in self._callbacks if cb != callback]

    def set_online(self, online: bool) -> bool:
        """Update the state; returns True when it actually changed."""
        online = bool(online)
        with self._lock:
            if online == self._online:
                return False
            self._online = online
            callbacks = list(self._callbacks)
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for callback in callbacks:
            try:
                callback(online)
            except Exception:
                logger.exception("Connectivity callback %r failed", callback)
        return True


__all__ = ["ConnectivityListener", "ConnectivitySource", "ManualConnectivity"]
