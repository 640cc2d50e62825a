"""
Processed-order tracking with a start watermark.

A fresh order_history subscription replays the target's recent orders. The
tracker rejects anything older than the watermark (service start minus a
small clock-skew buffer) and any order id already seen inside the retention
window. Seen ids are evicted by age so memory stays bounded.

Features:
- Atomic check-and-mark for the message handler
- Age-based eviction (oldest first)
- Thread-safe implementation
"""

import logging
import threading
import time
from collections import OrderedDict
from typing import Callable, Optional

from .models import OrderEvent

logger = logging.getLogger(__name__)

DEFAULT_WATERMARK_BUFFER = 30  # seconds
DEFAULT_RETENTION = 24 * 3600  # seconds


class OrderTracker:
    """
    Dedup set plus service-start watermark.

    Attributes:
        watermark: Unix seconds; events strictly older are historical replay.
        retention: Seconds an order id is remembered.

    Example:
        tracker = OrderTracker()
        if tracker.claim(event):
            dispatch(event)
    """

    def __init__(
        self,
        watermark: Optional[int] = None,
        watermark_buffer: int = DEFAULT_WATERMARK_BUFFER,
        retention: int = DEFAULT_RETENTION,
        clock: Callable[[], float] = time.time,
    ):
        self._clock = clock
        self.watermark = (
            watermark if watermark is not None else int(clock()) - watermark_buffer
        )
        self.retention = retention

        # order_id -> time marked, oldest first
        self._seen: "OrderedDict[str, float]" = OrderedDict()
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        cutoff = now - self.retention
        evicted = 0
        while self._seen:
            _, marked_at = next(iter(self._seen.items()))
            if marked_at >= cutoff:
                break
            self._seen.popitem(last=False)
            evicted += 1
        if evicted:
            logger.debug(f"Evicted {evicted} order ids older than {self.retention}s")

    def should_process(self, event: OrderEvent) -> bool:
        """False if the order is already marked or older than the watermark."""
        if event.timestamp < self.watermark:
            return False
        with self._lock:
            self._evict(self._clock())
            return event.order_id not in self._seen

    def mark_processed(self, order_id: str) -> None:
        with self._lock:
            now = self._clock()
            self._evict(now)
            self._seen[order_id] = now
            self._seen.move_to_end(order_id)

    def claim(self, event: OrderEvent) -> bool:
        """
        Check and mark in one step.

        Returns:
            True exactly once per order id within the retention window, and
            never for events before the watermark.
        """
        if event.timestamp < self.watermark:
            return False
        with self._lock:
            now = self._clock()
            self._evict(now)
            if event.order_id in self._seen:
                return False
            self._seen[event.order_id] = now
            return True

    def is_tracked(self, order_id: str) -> bool:
        with self._lock:
            return order_id in self._seen

    @property
    def tracked_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def clear(self) -> None:
        with self._lock:
            self._seen.clear()
