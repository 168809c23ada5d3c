"""In-memory notification bus for the raffle backend.

Listeners register per event type and are invoked synchronously after the
raffle commits a transition. Async consumers can instead `subscribe()` to a
queue channel fed from any thread.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from threading import Lock
from typing import Any, Callable, Dict, List, Optional, Tuple

from raffle.lottery.models import LiveFeedItem, RoundSnapshot
from raffle.utils.common import shorten_eth_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

ENTRY_RECORDED = "RaffleEnter"
DRAW_TRIGGERED = "RequestedRaffleWinner"
WINNER_RESOLVED = "WinnerPicked"

EVENT_TYPES = (ENTRY_RECORDED, DRAW_TRIGGERED, WINNER_RESOLVED)

Listener = Callable[[Dict[str, Any]], None]
Channel = Tuple[asyncio.AbstractEventLoop, "asyncio.Queue[Tuple[str, Dict[str, Any]]]"]


class EventBus:
    """Volatile notification fan-out plus live feed and round history."""

    def __init__(self, *, feed_capacity: int = 100, history_capacity: int = 20) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._channels: List[Channel] = []
        self._live_feed: deque[LiveFeedItem] = deque(maxlen=feed_capacity)
        self._history: deque[RoundSnapshot] = deque(maxlen=history_capacity)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug("Adding listener for event_type=%s, callback=%s", event_type, callback)

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)

    def subscribe(self, maxsize: int = 0) -> "asyncio.Queue[Tuple[str, Dict[str, Any]]]":
        """Return a queue receiving every (event_type, payload) emitted from now on.

        Must be called from within a running event loop.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue[Tuple[str, Dict[str, Any]]] = asyncio.Queue(maxsize=maxsize)
        with self._lock:
            self._channels.append((loop, queue))
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._channels = [(loop, q) for loop, q in self._channels if q is not queue]

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def emit(self, event_type: str, details: Dict[str, Any], *, event_time: int = 0) -> None:
        payload = dict(details)
        item = LiveFeedItem(
            event_type=event_type,
            message=self._describe(event_type, payload),
            details=payload,
            event_time=event_time,
        )
        with self._lock:
            self._live_feed.append(item)
            listeners = list(self._listeners.get(event_type, []))
            channels = list(self._channels)

        logger.info("Emitting %s: %s", event_type, item.message)
        for callback in listeners:
            try:
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

        for loop, queue in channels:
            try:
                loop.call_soon_threadsafe(queue.put_nowait, (event_type, payload))
            except RuntimeError:
                logger.debug("Dropping closed channel for %s", event_type)
                self.unsubscribe(queue)

    @staticmethod
    def _describe(event_type: str, details: Dict[str, Any]) -> str:
        if event_type == ENTRY_RECORDED:
            return f"{shorten_eth_address(str(details.get('player', '')))} entered with {details.get('amount')}"
        if event_type == DRAW_TRIGGERED:
            return f"Randomness requested (request {details.get('requestId')})"
        if event_type == WINNER_RESOLVED:
            return f"{shorten_eth_address(str(details.get('winner', '')))} won {details.get('amount')}"
        return event_type

    # ------------------------------------------------------------------
    # History and feed
    # ------------------------------------------------------------------
    def add_history_snapshot(self, snapshot: RoundSnapshot) -> None:
        with self._lock:
            self._history.append(snapshot)
        logger.debug("Added history snapshot: %s", snapshot)

    def get_round_history(self, limit: Optional[int] = None) -> List[RoundSnapshot]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def get_live_feed(self, limit: Optional[int] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    def clear_all_data(self) -> None:
        with self._lock:
            self._history.clear()
            self._live_feed.clear()
        logger.debug("clear_all_data called")
