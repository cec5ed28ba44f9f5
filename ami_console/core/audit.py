"""Bounded, append-only audit trail (observability only)."""

import threading
import time
from collections import deque
from typing import Callable, Deque, List, Optional

from ami_console.core.models import AuditEntry


class AuditLog:
    def __init__(self, maxlen: int = 500, *, clock: Callable[[], float] = time.time):
        self._entries: Deque[AuditEntry] = deque(maxlen=maxlen)
        self._lock = threading.Lock()
        self._clock = clock

    def record(self, text: str) -> AuditEntry:
        entry = AuditEntry(timestamp=self._clock(), text=text)
        with self._lock:
            self._entries.append(entry)
        return entry

    def recent(self, limit: Optional[int] = None) -> List[AuditEntry]:
        """Oldest first; the last ``limit`` entries when given."""
        with self._lock:
            entries = list(self._entries)
        if limit is not None:
            return entries[-limit:] if limit > 0 else []
        return entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
