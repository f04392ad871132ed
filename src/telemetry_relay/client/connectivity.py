# telemetry_relay/client/connectivity.py
"""
Connectivity signal for the client.

The flush engine only attempts delivery while the monitor reports online.
The state can be driven externally (an OS network callback calling
set_online) or by actively probing a URL.
"""

import logging
import threading
from collections.abc import Callable

import httpx

__all__: list[str] = ['ConnectivityMonitor']

logger: logging.Logger = logging.getLogger(__name__)

type ConnectivityCallback = Callable[[bool], None]


class ConnectivityMonitor:
    """
    Thread-safe online/offline flag with transition callbacks.

    Callbacks fire only when the state actually changes, on the thread that
    changed it. A failing callback is logged and does not prevent the others
    from running.
    """

    def __init__(
        self,
        initial: bool = True,
        probe_url: str | None = None,
        probe_timeout_seconds: float = 3.0,
    ) -> None:
        self._online: bool = initial
        self._probe_url: str | None = probe_url
        self._probe_timeout_seconds: float = probe_timeout_seconds
        self._lock = threading.Lock()
        self._subscribers: list[ConnectivityCallback] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def subscribe(self, callback: ConnectivityCallback) -> None:
        """Register a callback invoked with the new state on each transition."""
        with self._lock:
            self._subscribers.append(callback)

    def set_online(self, online: bool) -> None:
        """Set the connectivity state, notifying subscribers on a transition."""
        with self._lock:
            changed: bool = online != self._online
            self._online = online
            subscribers: list[ConnectivityCallback] = list(self._subscribers)

        if not changed:
            return

        logger.info('Connectivity changed: %s', 'online' if online else 'offline')
        for callback in subscribers:
            try:
                callback(online)
            except Exception:
                logger.exception('Connectivity callback %r failed', callback)

    def probe(self) -> bool:
        """
        Check reachability of the probe URL and update the state.

        Without a configured probe URL the current state is returned unchanged.

        Returns:
            The connectivity state after probing.
        """
        if self._probe_url is None:
            return self._online

        try:
            response: httpx.Response = httpx.get(
                self._probe_url, timeout=self._probe_timeout_seconds
            )
            reachable: bool = response.status_code < 500  # noqa: PLR2004
        except httpx.RequestError as error:
            logger.debug('Probe of %s failed: %s', self._probe_url, error)
            reachable = False

        self.set_online(reachable)
        return reachable
