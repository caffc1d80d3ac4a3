# Transport Layer
# Handles WebSocket control channels and the informational HTTP surface
# Separated from session logic so the relay core stays transport-agnostic

from udprelay.transport.channel import WebSocketChannel
from udprelay.transport.handler import WebSocketHandler

__all__ = ["WebSocketChannel", "WebSocketHandler"]
