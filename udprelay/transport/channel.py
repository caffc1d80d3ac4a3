"""
WebSocket Channel

The outbound half of a control channel: a bounded queue drained by one
writer task.

UDP receive callbacks and session handlers run synchronously and must not
await the network, so they only enqueue. The writer is the sole caller of
send_text(), which keeps frames in order and never interleaves writes.

A close request travels through the same queue as the messages before it:
everything already delivered reaches the client before the close frame.
"""

import asyncio
import logging
from typing import Awaitable, Callable, NamedTuple

from udprelay.errors import QueueFullError
from udprelay.session.session import ControlChannel

logger = logging.getLogger(__name__)

SendFn = Callable[[str], Awaitable[None]]
CloseFn = Callable[[int, str], Awaitable[None]]


class _CloseRequest(NamedTuple):
    code: int
    reason: str


class WebSocketChannel(ControlChannel):
    """
    Serialized, bounded writer for one WebSocket.

    deliver() never blocks: a client that stops reading gets its messages
    dropped (QueueFullError) instead of stalling its session.
    """

    def __init__(
        self,
        conn_id: str,
        send_fn: SendFn,
        close_fn: CloseFn | None = None,
        max_size: int = 200,
        flush_timeout: float = 1.0,
    ):
        """
        Args:
            conn_id: Label for log lines (the session id once known)
            send_fn: Sends one text frame
            close_fn: Sends the close frame (code, reason)
            max_size: Pending messages allowed before deliver() fails
            flush_timeout: How long close() waits for pending messages
        """
        self.conn_id = conn_id
        self._send_fn = send_fn
        self._close_fn = close_fn
        self._max_size = max_size
        self._flush_timeout = flush_timeout

        # One slot past max_size is reserved for the close request
        self._pending: asyncio.Queue[str | _CloseRequest] = asyncio.Queue(maxsize=max_size + 1)
        self._writer: asyncio.Task | None = None
        self._accepting = True

    async def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(
                self._write_loop(),
                name=f"ws_writer_{self.conn_id}"
            )

    def deliver(self, message: str) -> bool:
        """
        Queue one encoded message.

        Returns:
            False once the channel is closing or its socket has failed

        Raises:
            QueueFullError: If max_size messages are already pending
        """
        if not self._accepting:
            return False
        if self._pending.qsize() >= self._max_size:
            raise QueueFullError(self.conn_id, self._max_size)
        self._pending.put_nowait(message)
        return True

    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Send what is pending, then the close frame. Idempotent."""
        if not self._accepting:
            return
        self._accepting = False

        writer = self._writer
        if writer is None or writer.done():
            await self._send_close(_CloseRequest(code, reason))
            return

        self._pending.put_nowait(_CloseRequest(code, reason))
        try:
            await asyncio.wait_for(asyncio.shield(writer), timeout=self._flush_timeout)
        except asyncio.TimeoutError:
            logger.debug(f"Flush timed out for {self.conn_id}, {self._pending.qsize()} messages dropped")
            await self.abort()
            await self._send_close(_CloseRequest(code, reason))

    async def abort(self) -> None:
        """Stop writing without a close frame (the peer is already gone)."""
        self._accepting = False
        writer, self._writer = self._writer, None
        if writer is None or writer.done():
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise

    @property
    def pending(self) -> int:
        return self._pending.qsize()

    @property
    def is_closed(self) -> bool:
        return not self._accepting

    async def _write_loop(self) -> None:
        while True:
            item = await self._pending.get()

            if isinstance(item, _CloseRequest):
                await self._send_close(item)
                return

            try:
                await self._send_fn(item)
            except Exception as e:
                # Socket is dead; the receive loop will notice and clean up
                logger.warning(f"Send failed for {self.conn_id}: {e}")
                self._accepting = False
                return

    async def _send_close(self, request: _CloseRequest) -> None:
        if self._close_fn is None:
            return
        try:
            await self._close_fn(request.code, request.reason)
        except Exception as e:
            logger.debug(f"Close failed for {self.conn_id}: {e}")
