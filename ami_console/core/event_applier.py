"""
Folds AMI notifications into the StateStore, one message at a time.

Handlers are looked up by event name (``_ev_<Event>``); unknown events are
ignored. Every handler is idempotent: re-applying the same notification is a
no-op. Notifications are often partial, so merges never replace a known
value with an empty one.

Bridges are created on demand when a BridgeEnter (or a resync
CoreShowChannel) references one we never saw created: the console may start
observing in the middle of a call. Channels are likewise upserted from any
notification that names them, unless their uniqueid has already hung up.
"""

import time
from typing import Callable, Dict, List, Optional, Tuple

from prometheus_client import Counter

from ami_console.core.audit import AuditLog
from ami_console.core.classifier import parse_direction_hint
from ami_console.core.models import Bridge, Channel, meaningful
from ami_console.core.state_store import StateStore, StoreData
from ami_console.logging_config import get_logger

logger = get_logger(__name__)

_EVENTS_APPLIED = Counter(
    "ami_console_events_applied_total",
    "Notifications handled by the event applier",
    ["event"],
)


def parse_duration(value: Optional[str]) -> Optional[float]:
    """'HH:MM:SS' or plain seconds -> seconds; None when absent or unparseable."""
    if not value:
        return None
    value = value.strip()
    try:
        if ":" in value:
            seconds = 0
            for part in value.split(":"):
                seconds = seconds * 60 + int(part)
            return float(seconds)
        return float(value)
    except ValueError:
        return None


def _bridge_id(p: Dict[str, str]) -> str:
    return (p.get("BridgeUniqueid") or p.get("BridgeId") or "").strip()


class EventApplier:
    """The only writer of the StateStore."""

    def __init__(
        self,
        store: StateStore,
        audit: Optional[AuditLog] = None,
        *,
        direction_variable: str = "OPERATOR_DIRECTION",
        wall_clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.audit = audit
        self.direction_variable = direction_variable.lstrip("_").upper()
        self._wall_clock = wall_clock

    def apply(self, message: Dict[str, str]) -> bool:
        """Apply one notification. Returns True if the store changed."""
        event = message.get("Event")
        if not event:
            return False
        handler = getattr(self, f"_ev_{event}", None)
        if handler is None:
            return False

        notes: List[str] = []
        with self.store.mutate() as data:
            changed = handler(message, data, notes)
        _EVENTS_APPLIED.labels(event=event).inc()

        # audit has its own lock; never taken while holding the store lock
        if self.audit is not None:
            for note in notes:
                self.audit.record(note)
        return bool(changed)

    # ------------------------------------------------------------------
    # Helpers (store lock held)
    # ------------------------------------------------------------------
    def _upsert_channel(self, p: Dict[str, str], data: StoreData, notes: List[str]) -> Tuple[Optional[Channel], bool]:
        """Create or merge the channel named by ``p``. Returns (channel, changed)."""
        name = (p.get("Channel") or "").strip()
        if not name:
            return None, False
        uniqueid = (p.get("Uniqueid") or p.get("UniqueID") or "").strip()
        if data.is_buried(uniqueid):
            logger.debug("Ignoring update for hung-up channel", channel=name, uniqueid=uniqueid)
            return None, False

        now = self._wall_clock()
        changed = False
        channel = data.channels.get(name)
        if channel is None and uniqueid in data.by_uniqueid:
            # known under another name: a Rename we missed
            changed = self._relocate(data, data.by_uniqueid[uniqueid], name, notes)
            channel = data.channels.get(name)
        if channel is None:
            channel = Channel(name=name, created_at=now, updated_at=now)
            data.channels[name] = channel
            notes.append(f"Channel {name} appeared")
            changed = True

        previous_state = channel.state
        changed = channel.merge(p, now) or changed
        if channel.uniqueid:
            data.by_uniqueid[channel.uniqueid] = name
        if previous_state and channel.state != previous_state:
            notes.append(f"Channel {name} {previous_state} -> {channel.state}")
        return channel, changed

    def _relocate(self, data: StoreData, old: str, new: str, notes: List[str]) -> bool:
        channel = data.channels.pop(old, None)
        if channel is None:
            return False
        displaced = data.channels.pop(new, None)
        if displaced is not None:
            # the switch reused a name we still hold; the renamed channel wins
            logger.warning("Rename target already known, replacing it",
                           channel=old, newname=new, displaced_uniqueid=displaced.uniqueid)
            notes.append(f"Channel {new} replaced by {old}")
            if displaced.uniqueid and data.by_uniqueid.get(displaced.uniqueid) == new:
                del data.by_uniqueid[displaced.uniqueid]
            previous = data.bridges.get(displaced.bridge_id) if displaced.bridge_id else None
            if previous is not None:
                previous.members.discard(new)
        moved = channel.renamed(new)
        moved.updated_at = self._wall_clock()
        data.channels[new] = moved
        if moved.uniqueid:
            data.by_uniqueid[moved.uniqueid] = new
        for bridge in data.bridges.values():
            if old in bridge.members:
                bridge.members.discard(old)
                bridge.members.add(new)
        return True

    def _ensure_bridge(self, data: StoreData, bridge_id: str, p: Dict[str, str]) -> Bridge:
        bridge = data.bridges.get(bridge_id)
        if bridge is None:
            now = self._wall_clock()
            bridge = Bridge(bridge_id=bridge_id, bridge_type=p.get("BridgeType", ""), created_at=now, updated_at=now)
            data.bridges[bridge_id] = bridge
        elif not bridge.bridge_type and p.get("BridgeType"):
            bridge.bridge_type = p["BridgeType"]
        return bridge

    def _join(self, data: StoreData, bridge: Bridge, channel: Channel, anchor: Optional[float] = None) -> bool:
        if channel.bridge_id and channel.bridge_id != bridge.bridge_id:
            previous = data.bridges.get(channel.bridge_id)
            if previous is not None:
                previous.members.discard(channel.name)
        changed = channel.name not in bridge.members or channel.bridge_id != bridge.bridge_id
        bridge.members.add(channel.name)
        if anchor is not None:
            # resync: the longest-lived member dates the call
            if bridge.first_join is None or anchor < bridge.first_join:
                bridge.first_join = anchor
        elif bridge.first_join is None:
            bridge.first_join = self.store.clock()
        channel.bridge_id = bridge.bridge_id
        bridge.updated_at = self._wall_clock()
        return changed

    # ------------------------------------------------------------------
    # Channel notifications
    # ------------------------------------------------------------------
    def _ev_Newchannel(self, p, data, notes):
        return self._upsert_channel(p, data, notes)[1]

    def _ev_Newstate(self, p, data, notes):
        return self._upsert_channel(p, data, notes)[1]

    def _ev_NewCallerid(self, p, data, notes):
        return self._upsert_channel(p, data, notes)[1]

    def _ev_NewConnectedLine(self, p, data, notes):
        return self._upsert_channel(p, data, notes)[1]

    def _ev_VarSet(self, p, data, notes):
        channel, changed = self._upsert_channel(p, data, notes)
        if channel is None:
            return False
        variable = (p.get("Variable") or "").lstrip("_").upper()
        if variable != self.direction_variable:
            return changed
        hint = parse_direction_hint(p.get("Value"))
        if hint is not None and channel.direction_hint != hint:
            channel.direction_hint = hint
            notes.append(f"Channel {channel.name} direction hint {hint.value}")
            changed = True
        return changed

    def _ev_Rename(self, p, data, notes):
        old = (p.get("Channel") or "").strip()
        new = (p.get("Newname") or "").strip()
        if not old or not new or old == new:
            return False
        if old not in data.channels:
            if new in data.channels:
                return False  # duplicate delivery
            healed = dict(p, Channel=new)
            return self._upsert_channel(healed, data, notes)[1]
        self._relocate(data, old, new, notes)
        notes.append(f"Channel {old} renamed to {new}")
        return True

    def _ev_Hangup(self, p, data, notes):
        name = (p.get("Channel") or "").strip()
        uniqueid = (p.get("Uniqueid") or p.get("UniqueID") or "").strip()
        channel = data.channels.pop(name, None) if name else None
        if channel is None and uniqueid in data.by_uniqueid:
            name = data.by_uniqueid[uniqueid]
            channel = data.channels.pop(name, None)
        data.bury(uniqueid or (channel.uniqueid if channel else ""))
        if channel is None:
            return False

        if channel.uniqueid:
            data.by_uniqueid.pop(channel.uniqueid, None)
        for bridge in data.bridges.values():
            bridge.members.discard(name)
        cause = p.get("Cause-txt") or p.get("Cause") or ""
        notes.append(f"Channel {name} hung up" + (f" ({cause})" if meaningful(cause) else ""))
        return True

    # ------------------------------------------------------------------
    # Bridge notifications
    # ------------------------------------------------------------------
    def _ev_BridgeCreate(self, p, data, notes):
        bridge_id = _bridge_id(p)
        if not bridge_id or bridge_id in data.bridges:
            return False
        self._ensure_bridge(data, bridge_id, p)
        notes.append(f"Bridge {bridge_id} created")
        return True

    def _ev_BridgeEnter(self, p, data, notes):
        bridge_id = _bridge_id(p)
        if not bridge_id:
            return False
        channel, _ = self._upsert_channel(p, data, notes)
        if channel is None:
            return False
        bridge = self._ensure_bridge(data, bridge_id, p)
        if self._join(data, bridge, channel):
            notes.append(f"Channel {channel.name} entered bridge {bridge_id}")
            return True
        return False

    def _ev_BridgeLeave(self, p, data, notes):
        bridge_id = _bridge_id(p)
        name = (p.get("Channel") or "").strip()
        if not bridge_id or not name:
            return False
        changed = False
        bridge = data.bridges.get(bridge_id)
        if bridge is not None and name in bridge.members:
            bridge.members.discard(name)
            bridge.updated_at = self._wall_clock()
            changed = True
        channel = data.channels.get(name)
        if channel is not None and channel.bridge_id == bridge_id:
            channel.bridge_id = None
            changed = True
        if changed:
            notes.append(f"Channel {name} left bridge {bridge_id}")
        return changed

    def _ev_BridgeDestroy(self, p, data, notes):
        bridge_id = _bridge_id(p)
        bridge = data.bridges.pop(bridge_id, None) if bridge_id else None
        if bridge is None:
            return False
        for channel in data.channels.values():
            if channel.bridge_id == bridge_id:
                channel.bridge_id = None
        notes.append(f"Bridge {bridge_id} destroyed")
        return True

    # ------------------------------------------------------------------
    # Resync (CoreShowChannels)
    # ------------------------------------------------------------------
    def _ev_CoreShowChannel(self, p, data, notes):
        channel, changed = self._upsert_channel(p, data, notes)
        if channel is None:
            return False
        bridge_id = _bridge_id(p)
        if not bridge_id:
            if channel.bridge_id:
                previous = data.bridges.get(channel.bridge_id)
                if previous is not None:
                    previous.members.discard(channel.name)
                channel.bridge_id = None
                changed = True
            return changed

        bridge = self._ensure_bridge(data, bridge_id, p)
        anchor = None
        seconds = parse_duration(p.get("DurationSeconds")) or parse_duration(p.get("Duration"))
        if seconds is not None:
            anchor = self.store.clock() - seconds
        return self._join(data, bridge, channel, anchor=anchor) or changed
