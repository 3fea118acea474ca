"""
Connectivity monitoring.

Holds the current "is connected" flag and notifies listeners when it flips.
Listeners only fire on transitions, so a repeated "connected" report does not
trigger a second reconciliation.
"""

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

Listener = Callable[[], Union[None, Awaitable[None]]]


class ConnectivityMonitor:
    """In-process connectivity state with restored/lost event listeners."""

    def __init__(self, connected: bool = True):
        self._connected = connected
        self._restored_listeners: List[Listener] = []
        self._lost_listeners: List[Listener] = []
        self._connected_event: Optional[asyncio.Event] = None

    def is_connected(self) -> bool:
        return self._connected

    def on_restored(self, listener: Listener) -> Callable[[], None]:
        """Register a listener for connectivity restored; returns an unsubscribe callable."""
        self._restored_listeners.append(listener)
        return lambda: self._remove(self._restored_listeners, listener)

    def on_lost(self, listener: Listener) -> Callable[[], None]:
        self._lost_listeners.append(listener)
        return lambda: self._remove(self._lost_listeners, listener)

    def set_connected(self, connected: bool) -> None:
        """Report the current connectivity; listeners run only on a change."""
        if connected == self._connected:
            return

        self._connected = connected
        logger.info(f"Connectivity {'restored' if connected else 'lost'}")

        if self._connected_event is not None:
            if connected:
                self._connected_event.set()
            else:
                self._connected_event.clear()

        listeners = self._restored_listeners if connected else self._lost_listeners
        for listener in list(listeners):
            try:
                result = listener()
                if asyncio.iscoroutine(result):
                    asyncio.ensure_future(result)
            except Exception as e:
                logger.error(f"Connectivity listener failed: {e}")

    async def wait_until_connected(self) -> None:
        if self._connected_event is None:
            self._connected_event = asyncio.Event()
            if self._connected:
                self._connected_event.set()
        await self._connected_event.wait()

    @staticmethod
    def _remove(listeners: List[Listener], listener: Listener) -> None:
        if listener in listeners:
            listeners.remove(listener)
