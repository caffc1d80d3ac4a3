# UDP Endpoint
# One asyncio datagram socket per relay session

from udprelay.udp.endpoint import UdpEndpoint, ReceiveCallback

__all__ = ["UdpEndpoint", "ReceiveCallback"]
