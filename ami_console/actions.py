"""
Operator actions and request/response correlation.

Every command is tagged with a generated ActionID and parked in a pending
table until the reader task routes the matching ``Response`` back through
``route()``. Operations report only whether the switch accepted the command;
the resulting state change arrives later as ordinary notifications and is
applied by the EventApplier, never here.
"""

import asyncio
import itertools
import threading
import uuid
from typing import Dict, Iterable, List, Optional, Tuple

from prometheus_client import Counter

from ami_console.core.audit import AuditLog
from ami_console.errors import ActionRejected, TransportError
from ami_console.logging_config import get_logger
from ami_console.protocol import Message

logger = get_logger(__name__)

_ACTIONS = Counter(
    "ami_console_actions_total",
    "Operator actions by outcome",
    ["action", "outcome"],
)


class ActionDispatcher:
    """Sends commands through the session and correlates their responses."""

    def __init__(
        self,
        session,
        *,
        supervisor=None,
        action_timeout: float = 5.0,
        audit: Optional[AuditLog] = None,
        id_prefix: Optional[str] = None,
    ):
        self.session = session
        self.supervisor = supervisor
        self.action_timeout = action_timeout
        self.audit = audit
        self._prefix = id_prefix or uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)
        self._pending: Dict[str, asyncio.Future] = {}
        self._lock = threading.Lock()

    def next_action_id(self) -> str:
        return f"{self._prefix}-{next(self._counter)}"

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    # ------------------------------------------------------------------
    # Correlation (called from the reader task)
    # ------------------------------------------------------------------
    def route(self, message: Message) -> bool:
        """Complete a pending request. Returns False if ``message`` is a notification."""
        if "Response" not in message:
            return False
        action_id = message.get("ActionID")
        if not action_id:
            return False
        with self._lock:
            future = self._pending.pop(action_id, None)
        if future is None:
            return False
        if not future.done():
            future.set_result(message)
        return True

    def fail_all(self, exc: BaseException) -> int:
        """Fail every outstanding request, e.g. on connection loss."""
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(exc)
        if pending:
            logger.warning("Failed pending AMI actions", count=len(pending), error=str(exc))
        return len(pending)

    async def send_action(
        self,
        action: str,
        fields: Optional[Iterable[Tuple[str, object]]] = None,
        timeout: Optional[float] = None,
    ) -> Message:
        """Send one command and wait for its response.

        Raises:
            ActionRejected: the switch declined the command or did not answer in time
            TransportError: the connection failed before a response arrived
        """
        timeout = self.action_timeout if timeout is None else timeout
        action_id = self.next_action_id()
        future = asyncio.get_running_loop().create_future()
        with self._lock:
            self._pending[action_id] = future

        block: List[Tuple[str, object]] = [("Action", action), ("ActionID", action_id)]
        block.extend(fields or ())
        try:
            await self.session.send(block)
            response = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise ActionRejected(action, f"no response within {timeout:g}s") from e
        finally:
            with self._lock:
                self._pending.pop(action_id, None)

        if response.get("Response", "").lower() != "success":
            reason = response.get("Message") or f"Response: {response.get('Response') or '<empty>'}"
            raise ActionRejected(action, reason, response)
        return response

    async def _perform(self, action: str, fields: List[Tuple[str, object]], description: str) -> bool:
        try:
            await self.send_action(action, fields)
        except ActionRejected as e:
            outcome = "rejected" if e.response else "timeout"
            logger.warning("AMI action failed", action=action, target=description, outcome=outcome, reason=e.reason)
            self._record(action, outcome, f"{description}: {e.reason}")
            return False
        except (TransportError, ValueError) as e:
            logger.error("AMI action not delivered", action=action, target=description, error=str(e))
            self._record(action, "error", f"{description}: {e}")
            return False

        logger.info("AMI action accepted", action=action, target=description)
        self._record(action, "accepted", description)
        return True

    def _record(self, action: str, outcome: str, detail: str) -> None:
        _ACTIONS.labels(action=action, outcome=outcome).inc()
        if self.audit is not None:
            self.audit.record(f"{action} {outcome}: {detail}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def hangup_channel(self, channel: str) -> bool:
        """Hang up a single channel."""
        return await self._perform("Hangup", [("Channel", channel)], channel)

    async def kick_from_bridge(self, bridge_id: str, channel: str) -> bool:
        """Remove one participant from a bridge; the channel itself stays up."""
        return await self._perform(
            "BridgeKick",
            [("BridgeUniqueid", bridge_id), ("Channel", channel)],
            f"{channel} from {bridge_id}",
        )

    async def destroy_bridge(self, bridge_id: str) -> bool:
        return await self._perform("BridgeDestroy", [("BridgeUniqueid", bridge_id)], bridge_id)

    async def originate_supervisor_monitor(self, target_channel: str) -> bool:
        """Ask the switch to call the supervisor and splice them into ``target_channel``.

        The dialplan behind ``supervisor.context`` is expected to run ChanSpy
        (or similar) on the channel named by the extension. No media passes
        through this process.
        """
        endpoint = getattr(self.supervisor, "endpoint", None)
        if not endpoint:
            logger.warning("Monitor requested but no supervisor endpoint configured", target=target_channel)
            self._record("Originate", "not_configured", f"monitor {target_channel}: no supervisor endpoint")
            return False

        fields: List[Tuple[str, object]] = [
            ("Channel", endpoint),
            ("Context", self.supervisor.context),
            ("Exten", f"{self.supervisor.dial_prefix}{target_channel}"),
            ("Priority", 1),
            ("Async", "true"),
            ("Timeout", self.supervisor.timeout_ms),
        ]
        if self.supervisor.caller_id:
            fields.append(("CallerID", self.supervisor.caller_id))
        return await self._perform("Originate", fields, f"monitor {target_channel} via {endpoint}")

    async def hangup_all(self, channels: Iterable[str]) -> int:
        """Hang up each channel in turn. Returns how many the switch accepted."""
        accepted = 0
        for channel in channels:
            if await self.hangup_channel(channel):
                accepted += 1
        return accepted

    async def refresh(self) -> bool:
        """Request a full channel listing; results arrive as CoreShowChannel events."""
        return await self._perform("CoreShowChannels", [], "resync")
