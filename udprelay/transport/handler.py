"""
WebSocket Handler

The control channel of the UDP relay. Each accepted WebSocket becomes one
relay session; every frame it sends is routed to that session's ordered
request stream, and everything the session produces flows back through a
per-connection outbound queue.

Lifecycle:
- accept -> session opened, welcome sent
- text/binary frames -> SessionManager.dispatch
- disconnect, transport error, idle timeout or shutdown -> session closed,
  UDP socket released
"""

from __future__ import annotations

import logging

from fastapi import WebSocket, WebSocketDisconnect

from udprelay.resolver.address import host_from_header
from udprelay.session import SessionManager
from udprelay.transport.channel import WebSocketChannel

logger = logging.getLogger(__name__)

# Close code sent when the relay is at capacity ("Try Again Later")
CLOSE_TRY_AGAIN_LATER = 1013


class WebSocketHandler:
    """
    Handles control channel connections.
    
    Owns no session state itself: the SessionManager does.
    """
    
    def __init__(
        self,
        session_manager: SessionManager,
        outbound_queue_size: int = 200,
    ):
        """
        Initialize the handler.
        
        Args:
            session_manager: Registry the accepted sessions are added to
            outbound_queue_size: Max queued outbound messages per connection
        """
        self._sessions = session_manager
        self._outbound_queue_size = outbound_queue_size
    
    async def handle_connection(self, websocket: WebSocket) -> None:
        """
        Handle a WebSocket connection lifecycle.
        
        Args:
            websocket: The WebSocket connection
        """
        await websocket.accept()
        
        remote_address = websocket.client.host if websocket.client else None
        channel = WebSocketChannel(
            conn_id=f"{remote_address}",
            send_fn=websocket.send_text,
            close_fn=lambda code, reason: websocket.close(code=code, reason=reason),
            max_size=self._outbound_queue_size,
        )
        await channel.start()
        
        session = await self._sessions.open_session(
            channel,
            remote_address=remote_address,
            host_hint=host_from_header(websocket.headers.get("host")),
        )
        if session is None:
            await channel.close(CLOSE_TRY_AGAIN_LATER, "Too many connections")
            return
        
        channel.conn_id = session.id
        
        try:
            # Main message loop
            while True:
                raw = await self._receive_frame(websocket)
                await self._sessions.dispatch(session.id, raw)
        
        except WebSocketDisconnect as e:
            logger.info(f"WebSocket disconnected: {session.id} (code: {e.code})")
        
        except Exception as e:
            logger.error(f"WebSocket error for {session.id}: {e}")
        
        finally:
            await self._sessions.close_session(session.id, reason="control channel closed")
            await channel.abort()
    
    async def _receive_frame(self, websocket: WebSocket) -> str | bytes:
        """
        Receive one text or binary frame.
        
        Raises:
            WebSocketDisconnect: If the client went away
        """
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            raise WebSocketDisconnect(message.get("code", 1000))
        
        text = message.get("text")
        if text is not None:
            return text
        return message.get("bytes") or b""
