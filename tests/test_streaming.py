"""
Tests for policychat.streaming (channel, token, delta extraction).
"""

import asyncio
from types import SimpleNamespace

import pytest

from policychat.engines.base import ChatChunk
from policychat.streaming import (
    END_OF_STREAM,
    CancellationToken,
    ChannelClosed,
    ChunkChannel,
    extract_delta,
)


class TestChunkChannel:
    async def test_items_arrive_in_order(self):
        channel = ChunkChannel(maxsize=4)
        for item in ["a", "b", END_OF_STREAM]:
            assert await channel.send(item)

        assert [await channel.receive() for _ in range(3)] == ["a", "b", END_OF_STREAM]

    async def test_close_drops_buffered_items(self):
        channel = ChunkChannel(maxsize=4)
        await channel.send("a")
        await channel.send("b")

        channel.close()

        with pytest.raises(ChannelClosed):
            await channel.receive()
        assert channel.closed

    async def test_send_after_close_is_rejected(self):
        channel = ChunkChannel()
        channel.close()

        assert await channel.send("late") is False
        with pytest.raises(ChannelClosed):
            await channel.receive()

    async def test_close_wakes_waiting_receiver(self):
        channel = ChunkChannel()
        receiver = asyncio.ensure_future(channel.receive())
        await asyncio.sleep(0)

        channel.close()

        with pytest.raises(ChannelClosed):
            await receiver

    async def test_close_releases_blocked_sender(self):
        channel = ChunkChannel(maxsize=1)
        await channel.send("a")
        sender = asyncio.ensure_future(channel.send("b"))
        await asyncio.sleep(0)
        assert not sender.done()

        channel.close()

        assert await sender is False
        with pytest.raises(ChannelClosed):
            await channel.receive()

    async def test_close_is_idempotent(self):
        channel = ChunkChannel()
        channel.close()
        channel.close()

        assert channel.closed

    def test_maxsize_must_be_positive(self):
        with pytest.raises(ValueError):
            ChunkChannel(maxsize=0)


class TestCancellationToken:
    def test_cancel(self):
        token = CancellationToken()
        assert not token.cancelled

        token.cancel()
        token.cancel()

        assert token.cancelled


class TestExtractDelta:
    @pytest.mark.parametrize(
        "chunk,expected",
        [
            (ChatChunk(delta="hi"), "hi"),
            (ChatChunk(), ""),
            ("raw", "raw"),
            (None, ""),
            ({"choices": [{"delta": {"content": "x"}}]}, "x"),
            ({"choices": [{"delta": {"content": None}}]}, ""),
            ({"choices": [{"delta": {"role": "assistant"}}]}, ""),
            ({"choices": []}, ""),
            ({"delta": "y"}, "y"),
            (SimpleNamespace(delta="z"), "z"),
            (SimpleNamespace(delta=None), ""),
            (42, ""),
        ],
    )
    def test_shapes(self, chunk, expected):
        assert extract_delta(chunk) == expected
