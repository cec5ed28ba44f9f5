"""Unit tests for the bounded notification inbox."""

import asyncio

import pytest

from ami_console.core.inbox import NotificationInbox


class TestNotificationInbox:
    @pytest.mark.asyncio
    async def test_fifo_drain(self):
        inbox = NotificationInbox(capacity=10)
        for i in range(3):
            inbox.put({"Event": "Newstate", "Seq": str(i)})

        assert [m["Seq"] for m in inbox.drain()] == ["0", "1", "2"]
        assert inbox.drain() == []
        assert len(inbox) == 0

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self):
        inbox = NotificationInbox(capacity=2)
        for i in range(5):
            inbox.put({"Seq": str(i)})

        assert inbox.dropped == 3
        assert [m["Seq"] for m in inbox.drain()] == ["3", "4"]

    @pytest.mark.asyncio
    async def test_put_wakes_waiter(self):
        inbox = NotificationInbox(capacity=10)

        async def produce():
            await asyncio.sleep(0.01)
            inbox.put({"Event": "Hangup"})

        producer = asyncio.create_task(produce())
        woke = await inbox.wait(timeout=1.0)
        await producer

        assert woke is True
        assert len(inbox) == 1

    @pytest.mark.asyncio
    async def test_wait_times_out(self):
        inbox = NotificationInbox(capacity=10)
        assert await inbox.wait(timeout=0.01) is False

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            NotificationInbox(capacity=0)
