"""
Presentation boundary.

``OperatorConsole`` is what any front end talks to: it hands out read-only
snapshots (calls ordered by duration, with best-effort direction) and
accepts high-level intents, which the engine's consumer loop turns into
dispatcher calls. ``TextConsole`` is the bundled line-oriented front end,
rendering with rich.
"""

import asyncio
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set, TextIO, Tuple

from rich.console import Console
from rich.table import Table

from ami_console.actions import ActionDispatcher
from ami_console.core.audit import AuditLog
from ami_console.core.classifier import ClassificationRules, classify, classify_bridge
from ami_console.core.models import AuditEntry, ChannelView, Direction
from ami_console.core.state_store import StateStore
from ami_console.logging_config import get_logger

logger = get_logger(__name__)

# kind -> number of targets (None: any number)
INTENT_ARITY: Dict[str, Optional[int]] = {
    "hangup": 1,
    "kick": 2,        # bridge id, channel name
    "destroy": 1,
    "monitor": 1,
    "hangup_all": None,
    "refresh": 0,
}


@dataclass(frozen=True)
class BridgeView:
    bridge_id: str
    bridge_type: str
    direction: Direction
    duration: float
    members: List[ChannelView]


@dataclass(frozen=True)
class ConsoleSnapshot:
    bridges: List[BridgeView]
    audit: List[AuditEntry]
    taken_at: float

    def find(self, ref: str) -> Optional[BridgeView]:
        """Look up a bridge by id, or by its 1-based position in this snapshot."""
        for view in self.bridges:
            if view.bridge_id == ref:
                return view
        if ref.isdigit() and 1 <= int(ref) <= len(self.bridges):
            return self.bridges[int(ref) - 1]
        return None

    def to_dict(self) -> dict:
        return {
            "taken_at": self.taken_at,
            "bridges": [
                {
                    "bridge_id": b.bridge_id,
                    "bridge_type": b.bridge_type,
                    "direction": b.direction.value,
                    "duration": round(b.duration, 1),
                    "members": [
                        {
                            "name": m.name,
                            "state": m.state,
                            "caller_num": m.caller_num,
                            "caller_name": m.caller_name,
                            "connected_num": m.connected_num,
                            "connected_name": m.connected_name,
                            "context": m.context,
                        }
                        for m in b.members
                    ],
                }
                for b in self.bridges
            ],
            "audit": [{"timestamp": e.timestamp, "text": e.text} for e in self.audit],
        }


@dataclass(frozen=True)
class Intent:
    kind: str
    targets: Tuple[str, ...]


class OperatorConsole:
    def __init__(
        self,
        store: StateStore,
        dispatcher: ActionDispatcher,
        rules: ClassificationRules,
        audit: AuditLog,
        *,
        audit_limit: int = 20,
        wakeup: Optional[asyncio.Event] = None,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.rules = rules
        self.audit = audit
        self.audit_limit = audit_limit
        self.wakeup = wakeup
        self._intents: Deque[Intent] = deque()
        self._lock = threading.Lock()
        self._tasks: Set[asyncio.Task] = set()

    def snapshot(self) -> ConsoleSnapshot:
        """Non-empty bridges, longest-running first."""
        state = self.store.snapshot()
        views = []
        for bridge in state.bridges.values():
            members = list(state.members_of(bridge.bridge_id))
            if not members:
                continue
            views.append(
                BridgeView(
                    bridge_id=bridge.bridge_id,
                    bridge_type=bridge.bridge_type,
                    direction=classify_bridge(members, self.rules),
                    duration=bridge.duration,
                    members=members,
                )
            )
        views.sort(key=lambda v: (-v.duration, v.bridge_id))
        return ConsoleSnapshot(bridges=views, audit=self.audit.recent(self.audit_limit), taken_at=state.taken_at)

    def channel_names(self) -> List[str]:
        return sorted(self.store.snapshot().channels)

    def submit_intent(self, kind: str, target_ids: Sequence[str] = ()) -> Intent:
        """Queue an operator request.

        Raises ValueError for an unknown kind, a wrong target count, or a
        kick/destroy aimed at a bridge with no members.
        """
        if kind not in INTENT_ARITY:
            raise ValueError(f"Unknown intent: {kind}")
        targets = tuple(t.strip() for t in target_ids if t and t.strip())
        arity = INTENT_ARITY[kind]
        if arity is not None and len(targets) != arity:
            raise ValueError(f"{kind} takes {arity} target(s), got {len(targets)}")
        if kind in ("kick", "destroy") and not self.store.snapshot().members_of(targets[0]):
            # empty bridges are not calls
            raise ValueError(f"No active call: {targets[0]}")

        intent = Intent(kind, targets)
        with self._lock:
            self._intents.append(intent)
        if self.wakeup is not None:
            self.wakeup.set()
        logger.debug("Intent queued", kind=kind, targets=targets)
        return intent

    def has_pending_intents(self) -> bool:
        with self._lock:
            return bool(self._intents)

    def process_intents(self) -> List[asyncio.Task]:
        """Start every queued intent. Responses are awaited off the consumer loop."""
        with self._lock:
            intents = list(self._intents)
            self._intents.clear()
        started = []
        for intent in intents:
            task = asyncio.create_task(self.execute(intent))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            started.append(task)
        return started

    async def execute(self, intent: Intent):
        d = self.dispatcher
        t = intent.targets
        if intent.kind == "hangup":
            return await d.hangup_channel(t[0])
        if intent.kind == "kick":
            return await d.kick_from_bridge(t[0], t[1])
        if intent.kind == "destroy":
            return await d.destroy_bridge(t[0])
        if intent.kind == "monitor":
            return await d.originate_supervisor_monitor(t[0])
        if intent.kind == "hangup_all":
            return await d.hangup_all(t or self.channel_names())
        return await d.refresh()

    async def wait_idle(self) -> None:
        """Wait for in-flight intents (used at shutdown)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


HELP_TEXT = """\
Commands:
  list                       active calls (bridges), longest first
  show <bridge|#>            members of one call
  hangup <channel>           hang up a channel
  kick <bridge|#> <channel>  remove a channel from a call
  destroy <bridge|#>         tear down a whole call
  monitor <channel>          call the supervisor and splice them in
  hangup-all [bridge|#]      hang up every channel (or every member of one call)
  refresh                    resync from CoreShowChannels
  audit [n]                  recent events and action outcomes
  quit                       log off and exit"""


def _fmt_duration(seconds: float) -> str:
    seconds = int(seconds)
    h, rem = divmod(seconds, 3600)
    m, s = divmod(rem, 60)
    return f"{h}:{m:02d}:{s:02d}" if h else f"{m}:{s:02d}"


def _party(name: str, num: str) -> str:
    return f"{name + ' ' if name else ''}<{num or 'unknown'}>"


class TextConsole:
    """Line-oriented operator front end."""

    def __init__(self, console: OperatorConsole, *, out: Optional[Console] = None, on_quit: Optional[Callable[[], None]] = None):
        self.console = console
        self.out = out or Console()
        self.on_quit = on_quit
        self._stream: Optional[TextIO] = None

    def attach(self, loop: asyncio.AbstractEventLoop, stream: Optional[TextIO] = None) -> None:
        """Read commands from ``stream`` (stdin) without blocking the event loop."""
        self._stream = stream or sys.stdin
        loop.add_reader(self._stream.fileno(), self._on_input)
        self.out.print(HELP_TEXT)
        self._prompt()

    def detach(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._stream is not None:
            loop.remove_reader(self._stream.fileno())
            self._stream = None

    def _prompt(self) -> None:
        self.out.print("> ", end="")

    def _on_input(self) -> None:
        line = self._stream.readline()
        if not line:
            # EOF on stdin
            if self.on_quit is not None:
                self.on_quit()
            return
        if self.handle_command(line):
            self._prompt()

    def render_calls(self, snap: ConsoleSnapshot) -> Table:
        table = Table(title=f"Active calls: {len(snap.bridges)}")
        table.add_column("#", justify="right")
        table.add_column("Direction")
        table.add_column("Bridge")
        table.add_column("Members", justify="right")
        table.add_column("Duration", justify="right")
        table.add_column("Parties")
        for idx, b in enumerate(snap.bridges, 1):
            parties = " / ".join(_party(m.caller_name, m.caller_num) for m in b.members)
            table.add_row(str(idx), b.direction.value, b.bridge_id, str(len(b.members)), _fmt_duration(b.duration), parties)
        return table

    def render_bridge(self, view: BridgeView) -> Table:
        table = Table(title=f"Bridge {view.bridge_id} ({view.direction.value}, {_fmt_duration(view.duration)})")
        for column in ("Channel", "State", "From", "To", "Context", "Direction"):
            table.add_column(column)
        for m in view.members:
            table.add_row(
                m.name,
                m.state,
                _party(m.caller_name, m.caller_num),
                _party(m.connected_name, m.connected_num),
                m.context,
                classify(m, self.console.rules).value,
            )
        return table

    def render_audit(self, entries: List[AuditEntry]) -> Table:
        table = Table(title="Audit")
        table.add_column("Time")
        table.add_column("Entry")
        for e in entries:
            table.add_row(time.strftime("%H:%M:%S", time.localtime(e.timestamp)), e.text)
        return table

    def _resolve_bridge(self, ref: str) -> Optional[str]:
        view = self.console.snapshot().find(ref)
        if view is None:
            self.out.print(f"[red]No such call: {ref}[/red]")
            return None
        return view.bridge_id

    def handle_command(self, line: str) -> bool:
        """Run one command line. Returns False once the operator quits."""
        parts = line.split()
        if not parts:
            return True
        cmd, args = parts[0].lower(), parts[1:]

        try:
            if cmd in ("quit", "exit", "q"):
                if self.on_quit is not None:
                    self.on_quit()
                return False
            if cmd in ("help", "?"):
                self.out.print(HELP_TEXT)
            elif cmd in ("list", "ls"):
                self.out.print(self.render_calls(self.console.snapshot()))
            elif cmd == "show" and len(args) == 1:
                view = self.console.snapshot().find(args[0])
                if view is None:
                    self.out.print(f"[red]No such call: {args[0]}[/red]")
                else:
                    self.out.print(self.render_bridge(view))
            elif cmd == "hangup" and len(args) == 1:
                self.console.submit_intent("hangup", args)
            elif cmd == "kick" and len(args) == 2:
                bridge_id = self._resolve_bridge(args[0])
                if bridge_id:
                    self.console.submit_intent("kick", [bridge_id, args[1]])
            elif cmd == "destroy" and len(args) == 1:
                bridge_id = self._resolve_bridge(args[0])
                if bridge_id:
                    self.console.submit_intent("destroy", [bridge_id])
            elif cmd == "monitor" and len(args) == 1:
                self.console.submit_intent("monitor", args)
            elif cmd == "hangup-all" and len(args) <= 1:
                if args:
                    view = self.console.snapshot().find(args[0])
                    if view is None:
                        self.out.print(f"[red]No such call: {args[0]}[/red]")
                        return True
                    self.console.submit_intent("hangup_all", [m.name for m in view.members])
                else:
                    self.console.submit_intent("hangup_all", [])
            elif cmd == "refresh":
                self.console.submit_intent("refresh")
            elif cmd == "audit" and len(args) <= 1:
                limit = int(args[0]) if args else self.console.audit_limit
                self.out.print(self.render_audit(self.console.audit.recent(limit)))
            else:
                self.out.print(f"Unknown command: {line.strip()} (try 'help')")
        except ValueError as e:
            self.out.print(f"[red]{e}[/red]")
        return True
