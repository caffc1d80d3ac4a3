"""
UDP Endpoint

Wraps a single asyncio datagram transport with bind / send / receive / close.

Sends are fire-and-forget at the protocol level, but local failures are
reported: asyncio hands an immediate sendto() failure to the protocol's
error_received() before sendto() returns, so the endpoint captures it and
raises SendError from send(). Errors surfacing later (ICMP responses read
on the receive path) cannot be tied to a request and are only logged.
"""

import asyncio
import logging
import socket
from typing import Callable

from udprelay.errors import BindError, ErrorCategory, SendError

logger = logging.getLogger(__name__)

ReceiveCallback = Callable[[bytes, str, int], None]


class _EndpointProtocol(asyncio.DatagramProtocol):
    """Forwards transport events to the owning endpoint."""
    
    def __init__(self, endpoint: "UdpEndpoint"):
        self._endpoint = endpoint
    
    def datagram_received(self, data: bytes, addr) -> None:
        self._endpoint._datagram_received(data, addr[0], addr[1])
    
    def error_received(self, exc: Exception) -> None:
        self._endpoint._error_received(exc)
    
    def connection_lost(self, exc: Exception | None) -> None:
        if exc is not None:
            logger.warning(f"UDP endpoint {self._endpoint.name} lost: {exc}")


class UdpEndpoint:
    """
    Owns one OS-level UDP socket.
    
    Not shared: exactly one session creates, uses and closes it.
    """
    
    def __init__(self, name: str = "udp"):
        """
        Args:
            name: Label used in log lines (usually the session id)
        """
        self.name = name
        self._transport: asyncio.DatagramTransport | None = None
        self._on_receive: ReceiveCallback | None = None
        self._closed = False
        self._binding = False
        
        # Set by error_received() while a sendto() call is on the stack
        self._sending = False
        self._send_failure: OSError | None = None
    
    @property
    def is_bound(self) -> bool:
        return self._transport is not None and not self._closed
    
    @property
    def is_closed(self) -> bool:
        return self._closed
    
    @property
    def local_address(self) -> tuple[str, int] | None:
        """The (ip, port) the OS bound, or None before bind."""
        if self._transport is None:
            return None
        sockname = self._transport.get_extra_info("sockname")
        if not sockname:
            return None
        return sockname[0], sockname[1]
    
    def on_receive(self, callback: ReceiveCallback) -> None:
        """Register the single receive handler: callback(data, source_ip, source_port)."""
        self._on_receive = callback
    
    async def bind(self, ip: str, port: int) -> tuple[str, int]:
        """
        Bind the socket.
        
        Returns:
            The (address, port) assigned by the OS
        
        Raises:
            BindError: If the OS refused the bind or the endpoint was closed
        """
        if self._closed:
            raise BindError("UDP connect failed: endpoint closed")
        if self._transport is not None or self._binding:
            raise BindError("UDP connect failed: endpoint already bound")
        
        loop = asyncio.get_running_loop()
        self._binding = True
        try:
            transport, _ = await loop.create_datagram_endpoint(
                lambda: _EndpointProtocol(self),
                local_addr=(ip, port),
                family=socket.AF_INET,
            )
        except OSError as e:
            raise BindError.from_os_error(e, ip, port) from e
        finally:
            self._binding = False
        
        if self._closed:
            # Closed while the bind was in flight
            transport.close()
            raise BindError("UDP connect failed: endpoint closed during bind")
        
        self._transport = transport
        address = self.local_address
        logger.debug(f"UDP endpoint {self.name} bound to {address[0]}:{address[1]}")
        return address
    
    async def send(self, data: bytes, ip: str, port: int) -> int:
        """
        Send one datagram.
        
        Hostnames are resolved without blocking the event loop.
        
        Returns:
            Number of bytes handed to the OS
        
        Raises:
            SendError: If the endpoint is not bound or the OS rejected the send
        """
        if not self.is_bound:
            raise SendError("UDP not connected", ErrorCategory.NOT_CONNECTED)
        
        try:
            destination = await self._resolve(ip, port)
        except OSError as e:
            raise SendError.from_os_error(e) from e
        
        # The endpoint may have been closed while resolving
        if not self.is_bound:
            raise SendError("UDP not connected", ErrorCategory.NOT_CONNECTED)
        
        self._send_failure = None
        self._sending = True
        try:
            self._transport.sendto(data, destination)
        except OSError as e:
            raise SendError.from_os_error(e) from e
        finally:
            self._sending = False
        
        failure, self._send_failure = self._send_failure, None
        if failure is not None:
            raise SendError.from_os_error(failure)
        
        logger.debug(
            f"UDP endpoint {self.name} sent {len(data)} bytes to "
            f"{destination[0]}:{destination[1]}"
        )
        return len(data)
    
    def close(self) -> None:
        """Release the socket and detach the receive handler. Idempotent."""
        self._closed = True
        self._on_receive = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None
    
    async def _resolve(self, ip: str, port: int) -> tuple[str, int]:
        try:
            socket.inet_aton(ip)
            if ip.count(".") == 3:
                return ip, port
        except OSError:
            pass
        
        loop = asyncio.get_running_loop()
        infos = await loop.getaddrinfo(ip, port, family=socket.AF_INET, type=socket.SOCK_DGRAM)
        if not infos:
            raise socket.gaierror(socket.EAI_NONAME, f"Cannot resolve {ip}")
        return infos[0][4][0], infos[0][4][1]
    
    def _datagram_received(self, data: bytes, ip: str, port: int) -> None:
        callback = self._on_receive
        if callback is None or self._closed:
            return
        try:
            callback(data, ip, port)
        except Exception:
            logger.exception(f"UDP endpoint {self.name} receive handler failed")
    
    def _error_received(self, exc: Exception) -> None:
        if self._sending and isinstance(exc, OSError):
            self._send_failure = exc
            return
        logger.warning(f"UDP endpoint {self.name} socket error: {exc}")
