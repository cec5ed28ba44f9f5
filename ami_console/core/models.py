"""
Core data models for the AMI operator console.

Channels and bridges as reconstructed from the notification feed, plus the
immutable view types handed to the presentation layer.
"""

import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

# PJSIP/1001-0000000a, SIP/trunk-00000003, Local/100@from-internal-00000001;1
_RE_CHANNEL_NAME = re.compile(r'^(?P<tech>[^/]+)/(?P<peer>.+?)(?:-[0-9a-fA-F]+)?(?:;\d+)?$')

# AMI sends these in place of an absent value
_PLACEHOLDERS = {"<unknown>", "<none>"}

# Channel attributes that incoming notifications merge into (AMI field -> attribute)
CHANNEL_FIELDS = {
    "Uniqueid": "uniqueid",
    "Linkedid": "linkedid",
    "CallerIDNum": "caller_num",
    "CallerIDName": "caller_name",
    "ConnectedLineNum": "connected_num",
    "ConnectedLineName": "connected_name",
    "Context": "context",
    "Exten": "exten",
    "ChannelStateDesc": "state",
}


def parse_channel_name(name: str) -> Tuple[str, str]:
    """Split a channel name into (technology, peer); ('', '') if unparseable."""
    m = _RE_CHANNEL_NAME.match(name or "")
    if not m:
        return "", ""
    return m.group("tech"), m.group("peer")


def meaningful(value: Optional[str]) -> bool:
    """True for a real value, False for empty strings and AMI placeholders."""
    if value is None:
        return False
    v = value.strip()
    return bool(v) and v.lower() not in _PLACEHOLDERS


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    INTERNAL = "internal"
    UNKNOWN = "unknown"


@dataclass
class Channel:
    """One call leg as seen by the switch."""
    name: str
    uniqueid: str = ""
    linkedid: str = ""
    caller_num: str = ""
    caller_name: str = ""
    connected_num: str = ""
    connected_name: str = ""
    context: str = ""
    exten: str = ""
    state: str = ""
    technology: str = ""
    peer: str = ""
    direction_hint: Optional[Direction] = None
    bridge_id: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.technology and not self.peer:
            self.technology, self.peer = parse_channel_name(self.name)

    def merge(self, message: Dict[str, str], now: Optional[float] = None) -> bool:
        """Merge non-empty fields from a notification. Returns True if anything changed."""
        changed = False
        for key, attr in CHANNEL_FIELDS.items():
            value = message.get(key)
            if key == "Uniqueid" and not value:
                value = message.get("UniqueID")
            if meaningful(value) and getattr(self, attr) != value.strip():
                setattr(self, attr, value.strip())
                changed = True
        self.updated_at = now if now is not None else time.time()
        return changed

    def renamed(self, new_name: str) -> "Channel":
        tech, peer = parse_channel_name(new_name)
        return replace(self, name=new_name, technology=tech, peer=peer)


@dataclass
class Bridge:
    """A set of channels mixed together; what the operator perceives as a call."""
    bridge_id: str
    bridge_type: str = ""
    members: Set[str] = field(default_factory=set)
    first_join: Optional[float] = None      # monotonic clock; duration anchor
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def duration(self, now: float) -> float:
        if self.first_join is None:
            return 0.0
        return max(0.0, now - self.first_join)


@dataclass(frozen=True)
class AuditEntry:
    timestamp: float
    text: str


@dataclass(frozen=True)
class ChannelView:
    name: str
    uniqueid: str
    linkedid: str
    caller_num: str
    caller_name: str
    connected_num: str
    connected_name: str
    context: str
    exten: str
    state: str
    technology: str
    peer: str
    direction_hint: Optional[Direction]
    bridge_id: Optional[str]
    created_at: float
    updated_at: float

    @classmethod
    def of(cls, channel: Channel) -> "ChannelView":
        return cls(
            name=channel.name,
            uniqueid=channel.uniqueid,
            linkedid=channel.linkedid,
            caller_num=channel.caller_num,
            caller_name=channel.caller_name,
            connected_num=channel.connected_num,
            connected_name=channel.connected_name,
            context=channel.context,
            exten=channel.exten,
            state=channel.state,
            technology=channel.technology,
            peer=channel.peer,
            direction_hint=channel.direction_hint,
            bridge_id=channel.bridge_id,
            created_at=channel.created_at,
            updated_at=channel.updated_at,
        )


@dataclass(frozen=True)
class BridgeState:
    """Immutable copy of a Bridge, taken under the store lock."""
    bridge_id: str
    bridge_type: str
    members: FrozenSet[str]
    first_join: Optional[float]
    duration: float


@dataclass(frozen=True)
class StoreSnapshot:
    channels: Dict[str, ChannelView]
    bridges: Dict[str, BridgeState]
    taken_at: float

    def members_of(self, bridge_id: str) -> Tuple[ChannelView, ...]:
        bridge = self.bridges.get(bridge_id)
        if bridge is None:
            return ()
        return tuple(self.channels[name] for name in sorted(bridge.members) if name in self.channels)
