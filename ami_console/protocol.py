"""AMI wire framing.

An AMI message is a block of ``Key: Value`` lines terminated by an empty
line. Inbound blocks are parsed into plain dicts (last write wins when a key
repeats); outbound actions are serialized the same way, fields in caller
order.
"""

from __future__ import annotations

import asyncio
from typing import Dict, Iterable, Mapping, Optional, Tuple, Union

from prometheus_client import Counter

from ami_console.errors import MalformedMessage, TransportError
from ami_console.logging_config import get_logger

logger = get_logger(__name__)

LINE_TERMINATOR = b"\r\n"

Message = Dict[str, str]
Fields = Union[Mapping[str, object], Iterable[Tuple[str, object]]]

_MALFORMED_LINES = Counter(
    "ami_console_malformed_lines_total",
    "AMI lines dropped because they had no 'Key: Value' structure",
)


def parse_line(line: str) -> Tuple[str, str]:
    """Split one protocol line on its first colon. Raises MalformedMessage."""
    key, sep, value = line.partition(":")
    key = key.strip()
    if not sep or not key:
        raise MalformedMessage(line)
    return key, value.strip()


def encode_action(fields: Fields) -> bytes:
    """Serialize an action block. Values may not contain CR or LF."""
    items = fields.items() if isinstance(fields, Mapping) else fields
    parts = []
    for key, value in items:
        text = "" if value is None else str(value)
        if "\r" in text or "\n" in text or "\r" in key or "\n" in key:
            raise ValueError(f"AMI field {key!r} contains a line break")
        parts.append(f"{key}: {text}\r\n")
    parts.append("\r\n")
    return "".join(parts).encode("utf-8")


class AMIProtocolReader:
    """Turns an ``asyncio.StreamReader`` into a stream of AMI messages.

    Iterating never ends normally: when the connection is closed or fails,
    ``TransportError`` is raised instead.
    """

    def __init__(self, reader: asyncio.StreamReader):
        self._reader = reader
        self.malformed_count = 0

    def __aiter__(self) -> "AMIProtocolReader":
        return self

    async def __anext__(self) -> Message:
        return await self.read_message()

    async def read_line(self) -> str:
        try:
            raw = await self._reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            raise TransportError("AMI connection closed by peer") from e
        except asyncio.LimitOverrunError as e:
            raise TransportError(f"AMI line exceeds buffer limit ({e.consumed} bytes)") from e
        except (ConnectionError, OSError) as e:
            raise TransportError(f"AMI connection error: {e}") from e
        return raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def read_message(self) -> Message:
        message: Message = {}
        while True:
            line = await self.read_line()
            if not line.strip():
                if message:
                    return message
                continue
            try:
                key, value = parse_line(line)
            except MalformedMessage as e:
                self.malformed_count += 1
                _MALFORMED_LINES.inc()
                logger.debug("Dropping malformed AMI line", line=e.line)
                continue
            message[key] = value

    async def read_line_with_timeout(self, timeout: float) -> Optional[str]:
        """One line, or None if nothing arrives within ``timeout``."""
        try:
            return await asyncio.wait_for(self.read_line(), timeout=timeout)
        except asyncio.TimeoutError:
            return None
