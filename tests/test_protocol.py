"""
Unit tests for the AMI wire codec.

Tests cover:
- Line splitting (first colon, trimming, malformed lines)
- Action serialization (order, terminator, header injection guard)
- Message framing from a stream (blank lines, bare LF, EOF, oversized lines)
"""

import pytest

from ami_console.errors import MalformedMessage, TransportError
from ami_console.protocol import AMIProtocolReader, encode_action, parse_line
from helpers import ami_bytes, make_stream


class TestParseLine:
    def test_splits_on_first_colon(self):
        assert parse_line("Message: Channel not found: PJSIP/1") == ("Message", "Channel not found: PJSIP/1")

    def test_trims_key_and_value(self):
        assert parse_line("  Event :   Newchannel  ") == ("Event", "Newchannel")

    def test_empty_value_allowed(self):
        assert parse_line("CallerIDName:") == ("CallerIDName", "")

    def test_no_separator_is_malformed(self):
        with pytest.raises(MalformedMessage) as exc_info:
            parse_line("Asterisk Call Manager/7.0.3")
        assert exc_info.value.line == "Asterisk Call Manager/7.0.3"

    def test_empty_key_is_malformed(self):
        with pytest.raises(MalformedMessage):
            parse_line(": value")


class TestEncodeAction:
    def test_fields_in_caller_order_with_terminator(self):
        payload = encode_action([("Action", "Hangup"), ("ActionID", "x-1"), ("Channel", "PJSIP/1001-0001")])
        assert payload == b"Action: Hangup\r\nActionID: x-1\r\nChannel: PJSIP/1001-0001\r\n\r\n"

    def test_accepts_mapping(self):
        payload = encode_action({"Action": "Logoff"})
        assert payload == b"Action: Logoff\r\n\r\n"

    def test_non_string_values(self):
        payload = encode_action([("Priority", 1), ("CallerID", None)])
        assert payload == b"Priority: 1\r\nCallerID: \r\n\r\n"

    @pytest.mark.parametrize("value", ["PJSIP/1\r\nAction: Hangup", "a\nb", "a\rb"])
    def test_rejects_line_breaks(self, value):
        with pytest.raises(ValueError):
            encode_action([("Action", "Hangup"), ("Channel", value)])


class TestAMIProtocolReader:
    @pytest.mark.asyncio
    async def test_reads_consecutive_messages(self):
        data = ami_bytes(
            {"Event": "Newchannel", "Channel": "PJSIP/1001-0001"},
            {"Response": "Success", "ActionID": "a-1"},
        )
        reader = AMIProtocolReader(make_stream(data))

        first = await reader.read_message()
        second = await reader.read_message()

        assert first == {"Event": "Newchannel", "Channel": "PJSIP/1001-0001"}
        assert second == {"Response": "Success", "ActionID": "a-1"}

    @pytest.mark.asyncio
    async def test_extra_blank_lines_never_yield_empty_messages(self):
        data = b"\r\n\r\nEvent: A\r\n\r\n\r\n\r\nEvent: B\r\n\r\n"
        reader = AMIProtocolReader(make_stream(data))

        assert await reader.read_message() == {"Event": "A"}
        assert await reader.read_message() == {"Event": "B"}

    @pytest.mark.asyncio
    async def test_bare_lf_line_endings(self):
        reader = AMIProtocolReader(make_stream(b"Event: Hangup\nChannel: SIP/a-1\n\n"))
        assert await reader.read_message() == {"Event": "Hangup", "Channel": "SIP/a-1"}

    @pytest.mark.asyncio
    async def test_repeated_key_last_write_wins(self):
        reader = AMIProtocolReader(make_stream(b"Event: VarSet\r\nValue: one\r\nValue: two\r\n\r\n"))
        assert (await reader.read_message())["Value"] == "two"

    @pytest.mark.asyncio
    async def test_malformed_lines_dropped_and_counted(self):
        data = b"Event: Newstate\r\ngarbage without separator\r\nChannel: PJSIP/1-1\r\n\r\n"
        reader = AMIProtocolReader(make_stream(data))

        message = await reader.read_message()

        assert message == {"Event": "Newstate", "Channel": "PJSIP/1-1"}
        assert reader.malformed_count == 1

    @pytest.mark.asyncio
    async def test_undecodable_bytes_replaced(self):
        reader = AMIProtocolReader(make_stream(b"CallerIDName: Caf\xe9\r\n\r\n"))
        message = await reader.read_message()
        assert message["CallerIDName"].startswith("Caf")

    @pytest.mark.asyncio
    async def test_eof_raises_transport_error(self):
        reader = AMIProtocolReader(make_stream(b"Event: Newchannel\r\n"))
        with pytest.raises(TransportError):
            await reader.read_message()

    @pytest.mark.asyncio
    async def test_oversized_line_raises_transport_error(self):
        reader = AMIProtocolReader(make_stream(b"X" * 200, eof=False, limit=32))
        with pytest.raises(TransportError):
            await reader.read_line()

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        data = ami_bytes({"Event": "A"}, {"Event": "B"})
        seen = []
        with pytest.raises(TransportError):
            async for message in AMIProtocolReader(make_stream(data)):
                seen.append(message["Event"])
        assert seen == ["A", "B"]

    @pytest.mark.asyncio
    async def test_read_line_with_timeout_returns_none(self):
        reader = AMIProtocolReader(make_stream(b"", eof=False))
        assert await reader.read_line_with_timeout(0.01) is None
