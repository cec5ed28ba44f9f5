"""
Authoritative in-memory model of channels and bridges.

The store only provides locking, storage and snapshots. All mutation logic
lives in EventApplier, which is the sole caller of ``mutate()``; everything
else reads immutable snapshots.
"""

import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Callable, Deque, Dict, Iterator, Optional, Set

from prometheus_client import Gauge

from ami_console.core.models import Bridge, BridgeState, Channel, ChannelView, StoreSnapshot

_ACTIVE_CHANNELS = Gauge("ami_console_active_channels", "Channels currently known to the state store")
_ACTIVE_BRIDGES = Gauge("ami_console_active_bridges", "Bridges with at least one member")


class StoreData:
    """The mutable maps, only reachable while the store lock is held."""

    def __init__(self, tombstone_size: int):
        self.channels: Dict[str, Channel] = {}
        self.bridges: Dict[str, Bridge] = {}
        self.by_uniqueid: Dict[str, str] = {}   # uniqueid -> channel name
        self._tombstones: Deque[str] = deque()
        self._tombstone_set: Set[str] = set()
        self._tombstone_size = tombstone_size

    def bury(self, uniqueid: str) -> None:
        """Remember a terminated uniqueid so late updates cannot resurrect it."""
        if not uniqueid or self._tombstone_size <= 0 or uniqueid in self._tombstone_set:
            return
        if len(self._tombstones) >= self._tombstone_size:
            self._tombstone_set.discard(self._tombstones.popleft())
        self._tombstones.append(uniqueid)
        self._tombstone_set.add(uniqueid)

    def is_buried(self, uniqueid: Optional[str]) -> bool:
        return bool(uniqueid) and uniqueid in self._tombstone_set


class StateStore:
    def __init__(self, *, clock: Callable[[], float] = time.monotonic, tombstone_size: int = 4096):
        self.clock = clock
        self._lock = threading.Lock()
        self._data = StoreData(tombstone_size)

    @contextmanager
    def mutate(self) -> Iterator[StoreData]:
        """Hold the store lock for the application of one notification."""
        with self._lock:
            yield self._data
            channels = len(self._data.channels)
            bridges = sum(1 for b in self._data.bridges.values() if b.members)
        _ACTIVE_CHANNELS.set(channels)
        _ACTIVE_BRIDGES.set(bridges)

    def snapshot(self) -> StoreSnapshot:
        with self._lock:
            now = self.clock()
            channels = {name: ChannelView.of(ch) for name, ch in self._data.channels.items()}
            bridges = {
                bid: BridgeState(
                    bridge_id=b.bridge_id,
                    bridge_type=b.bridge_type,
                    members=frozenset(b.members),
                    first_join=b.first_join,
                    duration=b.duration(now),
                )
                for bid, b in self._data.bridges.items()
            }
        return StoreSnapshot(channels=channels, bridges=bridges, taken_at=now)
