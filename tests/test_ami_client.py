"""
Unit tests for AMISession.

Tests cover:
- Connect with banner drain (present / absent) and retry on failure
- Login success and rejection
- Write path, close/logoff idempotency
"""

import pytest
from unittest.mock import AsyncMock

from ami_console.ami_client import AMISession, SessionState
from ami_console.errors import AuthenticationError, TransportError
from helpers import ami_bytes, make_stream, make_writer, written_blocks

BANNER = b"Asterisk Call Manager/7.0.3\r\n"


def make_session(stream, writer, **kwargs):
    opener = AsyncMock(return_value=(stream, writer))
    kwargs.setdefault("banner_timeout", 0.05)
    return AMISession("pbx.example", 5038, opener=opener, **kwargs), opener


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_drains_banner(self):
        session, opener = make_session(make_stream(BANNER, eof=False), make_writer())

        await session.connect()

        opener.assert_awaited_once_with("pbx.example", 5038)
        assert session.banner == "Asterisk Call Manager/7.0.3"
        assert session.state == SessionState.CONNECTING
        assert session.is_connected

    @pytest.mark.asyncio
    async def test_missing_banner_is_not_an_error(self):
        session, _ = make_session(make_stream(b"", eof=False), make_writer(), banner_timeout=0.01)

        await session.connect()

        assert session.banner is None

    @pytest.mark.asyncio
    async def test_connect_failure_marks_failed(self):
        opener = AsyncMock(side_effect=ConnectionRefusedError("refused"))
        session = AMISession("pbx.example", 5038, connect_attempts=1, opener=opener)

        with pytest.raises(TransportError):
            await session.connect()

        assert session.state == SessionState.FAILED
        assert "refused" in session.failure_reason

    @pytest.mark.asyncio
    async def test_connect_retries_until_success(self):
        stream, writer = make_stream(BANNER, eof=False), make_writer()
        opener = AsyncMock(side_effect=[OSError("unreachable"), (stream, writer)])
        session = AMISession("pbx.example", 5038, connect_attempts=2, banner_timeout=0.05, opener=opener)

        await session.connect()

        assert opener.await_count == 2
        assert session.banner == "Asterisk Call Manager/7.0.3"


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_login_success(self):
        data = BANNER + ami_bytes({"Response": "Success", "Message": "Authentication accepted"})
        writer = make_writer()
        session, _ = make_session(make_stream(data, eof=False), writer)
        await session.connect()

        await session.authenticate("operator", "s3cret")

        assert session.is_authenticated
        login = written_blocks(writer)[0]
        assert login == "Action: Login\r\nUsername: operator\r\nSecret: s3cret\r\nEvents: on\r\n\r\n"

    @pytest.mark.asyncio
    async def test_events_during_login_are_replayed_first(self):
        data = BANNER + ami_bytes(
            {"Event": "FullyBooted", "Status": "Fully Booted"},
            {"Event": "Newchannel", "Channel": "PJSIP/1001-1", "Uniqueid": "u1"},
            {"Response": "success"},
            {"Event": "Hangup", "Channel": "PJSIP/1001-1", "Uniqueid": "u1"},
        )
        session, _ = make_session(make_stream(data, eof=True), make_writer())
        await session.connect()

        await session.authenticate("operator", "s3cret")

        assert session.state == SessionState.AUTHENTICATED
        seen = []
        with pytest.raises(TransportError):
            async for message in session.events():
                seen.append(message["Event"])
        assert seen == ["FullyBooted", "Newchannel", "Hangup"]

    @pytest.mark.asyncio
    async def test_login_rejected(self):
        data = BANNER + ami_bytes({"Response": "Error", "Message": "Authentication failed"})
        session, _ = make_session(make_stream(data, eof=False), make_writer())
        await session.connect()

        with pytest.raises(AuthenticationError, match="Authentication failed"):
            await session.authenticate("operator", "wrong")

        assert session.state == SessionState.FAILED
        assert not session.is_authenticated

    @pytest.mark.asyncio
    async def test_connection_lost_during_login(self):
        session, _ = make_session(make_stream(BANNER, eof=True), make_writer())
        await session.connect()

        with pytest.raises(AuthenticationError):
            await session.authenticate("operator", "s3cret")

        assert session.state == SessionState.FAILED


class TestSendAndClose:
    @pytest.mark.asyncio
    async def test_send_before_connect_raises(self):
        session = AMISession("pbx.example")
        with pytest.raises(TransportError):
            await session.send([("Action", "Ping")])

    @pytest.mark.asyncio
    async def test_write_failure_raises_transport_error(self):
        writer = make_writer()
        writer.drain = AsyncMock(side_effect=ConnectionResetError("reset"))
        session, _ = make_session(make_stream(BANNER, eof=False), writer)
        await session.connect()

        with pytest.raises(TransportError):
            await session.send([("Action", "Ping")])
        assert session.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_close_logs_off_once(self):
        data = BANNER + ami_bytes({"Response": "Success"})
        writer = make_writer()
        session, _ = make_session(make_stream(data, eof=False), writer)
        await session.connect()
        await session.authenticate("operator", "s3cret")

        await session.close()
        await session.close()

        blocks = written_blocks(writer)
        assert blocks[-1] == "Action: Logoff\r\n\r\n"
        assert sum(1 for b in blocks if b.startswith("Action: Logoff")) == 1
        writer.close.assert_called_once()
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_close_without_login_skips_logoff(self):
        writer = make_writer()
        session, _ = make_session(make_stream(BANNER, eof=False), writer)
        await session.connect()

        await session.close()

        assert written_blocks(writer) == []
        writer.close.assert_called_once()
