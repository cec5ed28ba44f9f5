"""Bounded FIFO between the reader task and the consumer loop."""

import asyncio
import threading
from collections import deque
from typing import Deque, List, Optional

from prometheus_client import Counter

from ami_console.logging_config import get_logger
from ami_console.protocol import Message

logger = get_logger(__name__)

_INBOX_DROPPED = Counter(
    "ami_console_inbox_dropped_total",
    "Notifications discarded because the inbox was full",
)


class NotificationInbox:
    """Drop-oldest queue of pending notifications.

    ``put`` never blocks the reader. When full, the oldest undelivered
    message is discarded and counted.
    """

    def __init__(self, capacity: int = 20000, wakeup: Optional[asyncio.Event] = None):
        if capacity < 1:
            raise ValueError("inbox capacity must be positive")
        self.capacity = capacity
        self.wakeup = wakeup or asyncio.Event()
        self.dropped = 0
        self._items: Deque[Message] = deque()
        self._lock = threading.Lock()

    def put(self, message: Message) -> None:
        with self._lock:
            overflow = len(self._items) >= self.capacity
            if overflow:
                self._items.popleft()
                self.dropped += 1
            self._items.append(message)
        if overflow:
            _INBOX_DROPPED.inc()
            if self.dropped == 1 or self.dropped % 1000 == 0:
                logger.warning("Inbox full, dropping oldest notifications", dropped=self.dropped, capacity=self.capacity)
        self.wakeup.set()

    def drain(self) -> List[Message]:
        """Take everything queued, in arrival order."""
        with self._lock:
            items = list(self._items)
            self._items.clear()
        return items

    async def wait(self, timeout: float) -> bool:
        """Wait up to ``timeout`` for a wakeup. Returns True if woken."""
        try:
            await asyncio.wait_for(self.wakeup.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
        finally:
            self.wakeup.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
