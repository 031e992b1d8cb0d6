"""
Typed event channels between engine components.
"""
import logging
import queue
import threading
from typing import Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EventChannel(Generic[T]):
    """
    Bounded, thread-safe FIFO.

    ``publish`` never blocks the producer; when the channel is full the oldest
    pending event is dropped and counted.
    """

    def __init__(self, name: str, max_size: int = 1000):
        self.name = name
        self._queue: "queue.Queue[T]" = queue.Queue(maxsize=max_size)
        self._lock = threading.Lock()
        self.published = 0
        self.dropped = 0

    def publish(self, event: T) -> None:
        with self._lock:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    pass
                self.dropped += 1
                logger.warning(f"Channel {self.name} full, dropped oldest event ({self.dropped} dropped so far)")
                self._queue.put_nowait(event)
            self.published += 1

    def drain(self, max_items: Optional[int] = None) -> List[T]:
        """Pop pending events in publication order."""
        events: List[T] = []
        while max_items is None or len(events) < max_items:
            try:
                events.append(self._queue.get_nowait())
            except queue.Empty:
                break
        return events

    def __len__(self) -> int:
        return self._queue.qsize()
