"""Outbound control channel writer."""

import asyncio

import pytest

from udprelay.errors import QueueFullError
from udprelay.transport.channel import WebSocketChannel


class RecordingSocket:
    def __init__(self):
        self.frames: list[str] = []
        self.closed_with: tuple[int, str] | None = None
        self.gate = asyncio.Event()
        self.gate.set()
    
    async def send(self, text: str) -> None:
        await self.gate.wait()
        self.frames.append(text)
    
    async def close(self, code: int, reason: str) -> None:
        self.closed_with = (code, reason)


@pytest.mark.asyncio
async def test_backpressure_when_client_stops_reading():
    socket = RecordingSocket()
    socket.gate.clear()
    channel = WebSocketChannel("c1", socket.send, socket.close, max_size=2)
    await channel.start()
    
    assert channel.deliver("a")
    assert channel.deliver("b")
    with pytest.raises(QueueFullError) as exc_info:
        channel.deliver("c")
    
    assert exc_info.value.channel_id == "c1"
    assert exc_info.value.limit == 2
    assert "c1" in str(exc_info.value)
    await channel.abort()


@pytest.mark.asyncio
async def test_close_flushes_pending_messages_first():
    socket = RecordingSocket()
    channel = WebSocketChannel("c1", socket.send, socket.close)
    await channel.start()
    
    for text in ("one", "two", "three"):
        channel.deliver(text)
    await channel.close(1000, "Connection timeout")
    
    assert socket.frames == ["one", "two", "three"]
    assert socket.closed_with == (1000, "Connection timeout")
    assert not channel.deliver("late")
    # Idempotent
    await channel.close(1000, "again")
    assert socket.closed_with == (1000, "Connection timeout")


@pytest.mark.asyncio
async def test_close_gives_up_on_a_stuck_writer():
    socket = RecordingSocket()
    socket.gate.clear()
    channel = WebSocketChannel("c1", socket.send, socket.close, flush_timeout=0.05)
    await channel.start()
    channel.deliver("never sent")
    
    await asyncio.wait_for(channel.close(1000, "Server shutdown"), timeout=1)
    
    assert socket.frames == []
    assert socket.closed_with == (1000, "Server shutdown")
