# Control Channel Protocol
# JSON messages with a `type` discriminator exchanged over the WebSocket

from udprelay.protocol.messages import (
    MessageType,
    ClientRequest,
    UdpConnectRequest,
    UdpSendRequest,
    UdpDisconnectRequest,
    UdpSendToClientRequest,
    PingRequest,
    ServerMessage,
    decode_request,
    encode_message,
)

__all__ = [
    "MessageType",
    "ClientRequest",
    "UdpConnectRequest",
    "UdpSendRequest",
    "UdpDisconnectRequest",
    "UdpSendToClientRequest",
    "PingRequest",
    "ServerMessage",
    "decode_request",
    "encode_message",
]
