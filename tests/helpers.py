"""Test doubles: fake clocks, in-memory AMI streams and a scripted session."""

import asyncio
from typing import Callable, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

from ami_console.errors import TransportError
from ami_console.protocol import encode_action


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def ami_bytes(*messages: Dict[str, str]) -> bytes:
    """Serialize messages the way the switch does (CRLF, blank-line terminated)."""
    out = []
    for message in messages:
        for key, value in message.items():
            out.append(f"{key}: {value}\r\n")
        out.append("\r\n")
    return "".join(out).encode("utf-8")


def make_stream(data: bytes = b"", eof: bool = True, limit: int = 2 ** 16) -> asyncio.StreamReader:
    """An in-memory StreamReader. Must be called with a running loop."""
    reader = asyncio.StreamReader(limit=limit)
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def make_writer() -> MagicMock:
    writer = MagicMock()
    writer.write = MagicMock()
    writer.drain = AsyncMock()
    writer.close = MagicMock()
    writer.wait_closed = AsyncMock()
    return writer


def written_blocks(writer: MagicMock) -> List[str]:
    return [call.args[0].decode("utf-8") for call in writer.write.call_args_list]


class ScriptedSession:
    """Stands in for AMISession in dispatcher and engine tests.

    Every sent block is recorded. ``responder`` (if set) is called with the
    parsed block and may return a response dict, which is routed back
    through ``route`` on the next loop iteration, like the reader task would.
    """

    def __init__(self):
        self.sent: List[Dict[str, str]] = []
        self.responder: Optional[Callable[[Dict[str, str]], Optional[Dict[str, str]]]] = None
        self.route: Optional[Callable[[Dict[str, str]], bool]] = None
        self.fail_sends = False

    async def send(self, fields) -> None:
        if self.fail_sends:
            raise TransportError("not connected")
        fields = list(fields)
        encode_action(fields)
        block = {str(k): "" if v is None else str(v) for k, v in fields}
        self.sent.append(block)
        if self.responder is not None and self.route is not None:
            response = self.responder(block)
            if response is not None:
                asyncio.get_running_loop().call_soon(self.route, response)

    def actions(self, name: str) -> List[Dict[str, str]]:
        return [b for b in self.sent if b.get("Action") == name]


def respond(status: str = "Success", message: str = "") -> Callable[[Dict[str, str]], Dict[str, str]]:
    def responder(block: Dict[str, str]) -> Dict[str, str]:
        reply = {"Response": status, "ActionID": block["ActionID"]}
        if message:
            reply["Message"] = message
        return reply
    return responder


def parse_blocks(data: bytes) -> List[Dict[str, str]]:
    blocks = []
    for chunk in data.decode("utf-8").split("\r\n\r\n"):
        if not chunk.strip():
            continue
        block = {}
        for line in chunk.split("\r\n"):
            key, _, value = line.partition(": ")
            block[key] = value
        blocks.append(block)
    return blocks


class FakeSwitch:
    """Answers whatever the session writes by feeding the session's reader.

    ``verdicts`` maps an action name to (Response, Message); ``follow_up``
    maps an action name to a callable returning notifications to emit after
    the response. ``before_login`` holds notifications the switch emits
    ahead of the login response.
    """

    BANNER = b"Asterisk Call Manager/7.0.3\r\n"

    def __init__(self, stream: asyncio.StreamReader, *, login_ok: bool = True):
        self.stream = stream
        self.login_ok = login_ok
        self.actions: List[Dict[str, str]] = []
        self.verdicts: Dict[str, tuple] = {}
        self.follow_up: Dict[str, Callable[[Dict[str, str]], List[Dict[str, str]]]] = {}
        self.before_login: List[Dict[str, str]] = []
        self.writer = make_writer()
        self.writer.write.side_effect = self.write
        stream.feed_data(self.BANNER)

    def opener(self) -> AsyncMock:
        return AsyncMock(return_value=(self.stream, self.writer))

    def feed(self, *messages: Dict[str, str]) -> None:
        self.stream.feed_data(ami_bytes(*messages))

    def received(self, action: str) -> List[Dict[str, str]]:
        return [b for b in self.actions if b.get("Action") == action]

    def write(self, data: bytes) -> None:
        for block in parse_blocks(data):
            self.actions.append(block)
            self._answer(block)

    def _answer(self, block: Dict[str, str]) -> None:
        action = block.get("Action")
        if action == "Login":
            if self.before_login:
                self.feed(*self.before_login)
            if self.login_ok:
                self.feed({"Response": "Success", "Message": "Authentication accepted"})
            else:
                self.feed({"Response": "Error", "Message": "Authentication failed"})
            return
        if action == "Logoff":
            self.feed({"Response": "Goodbye", "Message": "Thanks for all the fish."})
            self.stream.feed_eof()
            return

        status, message = self.verdicts.get(action, ("Success", ""))
        reply = {"Response": status, "ActionID": block.get("ActionID", "")}
        if message:
            reply["Message"] = message
        self.feed(reply)
        follow = self.follow_up.get(action)
        if follow is not None:
            self.feed(*follow(block))


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
