"""
Error taxonomy for the AMI operator console.

- TransportError: connection-level failure, fatal to the current session.
- AuthenticationError: login rejected; fatal at startup.
- ActionRejected: the switch answered but declined a command (or never answered).
- MalformedMessage: a protocol line without the expected structure; dropped.
"""

from typing import Dict, Optional


class AMIConsoleError(Exception):
    """Base class for all console errors."""


class TransportError(AMIConsoleError):
    """The AMI connection failed or was closed."""


class AuthenticationError(AMIConsoleError):
    """The switch did not accept the login."""


class MalformedMessage(AMIConsoleError):
    """A protocol line could not be parsed."""

    def __init__(self, line: str):
        super().__init__(f"Malformed AMI line: {line!r}")
        self.line = line


class ActionRejected(AMIConsoleError):
    """The switch declined a command, or did not answer it in time."""

    def __init__(self, action: str, reason: str, response: Optional[Dict[str, str]] = None):
        super().__init__(f"{action} rejected: {reason}")
        self.action = action
        self.reason = reason
        self.response = dict(response or {})
