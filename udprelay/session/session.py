"""
Session Model

Server-side state bound to one control channel connection.

Session Lifecycle:
1. OPEN - Control channel connected, no UDP socket
2. UDP_BINDING - udp_connect accepted, bind in flight
3. UDP_READY - Socket bound, datagrams flow both ways
4. CLOSED - Control channel gone (terminal)

udp_disconnect returns a ready session to OPEN; a failed bind does too.

Requests from the client are processed strictly in arrival order by a single
worker task per session. Bind, send and address resolution suspend that
worker, never the control channel's receive loop, and never another session.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable
from uuid import uuid4

from udprelay.config import DeploymentMode
from udprelay.errors import (
    BindError,
    ErrorCategory,
    QueueFullError,
    RelayError,
    RequestError,
    SendError,
)
from udprelay.protocol.messages import (
    ClientRequest,
    MessageType,
    PingRequest,
    PongMessage,
    ServerMessage,
    UdpConnectRequest,
    UdpDisconnectRequest,
    UdpDisconnectedMessage,
    UdpSendRequest,
    UdpSendToClientRequest,
    UdpSentMessage,
    UdpSentToClientMessage,
    create_error,
    create_udp_connected,
    create_udp_data,
    create_welcome,
    decode_request,
    encode_message,
)
from udprelay.resolver.address import (
    LOOPBACK_IPV4,
    AddressResolver,
    decide_bind_target,
    is_ipv4_literal,
    is_loopback,
    is_wildcard,
)
from udprelay.udp.endpoint import UdpEndpoint

logger = logging.getLogger(__name__)

EndpointFactory = Callable[[str], UdpEndpoint]


class SessionState(str, Enum):
    """Session lifecycle states."""
    OPEN = "open"                # Control channel connected, no UDP
    UDP_BINDING = "udp_binding"  # Bind in flight
    UDP_READY = "udp_ready"      # Bound, may send/receive
    CLOSED = "closed"            # Terminal


class ControlChannel(ABC):
    """
    Outbound half of a client's control channel.
    
    Borrowed from the transport; the session never owns its lifetime.
    """
    
    @abstractmethod
    def deliver(self, message: str) -> bool:
        """
        Queue an encoded message without blocking.
        
        Returns:
            False if the channel is already closed
        
        Raises:
            QueueFullError: If the client is not draining its messages
        """
        ...
    
    @abstractmethod
    async def close(self, code: int = 1000, reason: str = "") -> None:
        """Flush pending messages and close the connection."""
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Session:
    """
    A relay session.
    
    Owns at most one UdpEndpoint at a time. A udp_connect while an endpoint
    is live is rejected; the client must udp_disconnect first.
    """
    
    def __init__(
        self,
        channel: ControlChannel,
        resolver: AddressResolver,
        deployment_mode: DeploymentMode = DeploymentMode.UNRESTRICTED,
        endpoint_factory: EndpointFactory = UdpEndpoint,
        remote_address: str | None = None,
        host_hint: str | None = None,
        default_client_target_port: int = 8081,
        session_id: str | None = None,
    ):
        """
        Initialize a session.
        
        Args:
            channel: Where encoded messages for this client go
            resolver: Visible address resolution for wildcard binds
            deployment_mode: Binding policy of this relay
            endpoint_factory: Creates the UDP endpoint on udp_connect
            remote_address: Peer address of the control channel (diagnostics)
            host_hint: Host the client used to reach the control channel
            default_client_target_port: Fallback port for udp_send_to_client
            session_id: Explicit id (generated when omitted)
        """
        # === Identity ===
        self.id = session_id or uuid4().hex
        self.channel = channel
        self.remote_address = remote_address
        self.host_hint = host_hint
        
        # === Collaborators ===
        self._resolver = resolver
        self._mode = deployment_mode
        self._endpoint_factory = endpoint_factory
        self._default_client_target_port = default_client_target_port
        
        # === UDP ===
        self.state = SessionState.OPEN
        self._endpoint: UdpEndpoint | None = None
        self.requested_local_ip: str | None = None
        self.requested_local_port: int | None = None
        self.bound_local_address: str | None = None
        self.bound_local_port: int | None = None
        self.visible_address: str | None = None
        self.last_remote_address: str | None = None
        self.last_remote_port: int | None = None
        
        # === Timing ===
        self.created_at = _utcnow()
        self._last_activity = time.monotonic()
        
        # === Request stream ===
        self._inbox: asyncio.Queue[str | bytes | ClientRequest] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
    
    # === Lifecycle ===
    
    def start(self) -> None:
        """Start the request worker."""
        if self._worker is None and self.state != SessionState.CLOSED:
            self._worker = asyncio.create_task(
                self._worker_loop(),
                name=f"session_worker_{self.id}"
            )
    
    async def close(self, reason: str | None = None) -> bool:
        """
        Tear the session down. Idempotent.
        
        Releases the UDP endpoint and cancels queued or in-flight requests;
        a bind or send suspended in the worker is abandoned safely.
        
        Returns:
            True if this call closed the session
        """
        if self.state == SessionState.CLOSED:
            return False
        
        self.state = SessionState.CLOSED
        self._release_endpoint()
        
        worker, self._worker = self._worker, None
        if worker is not None and worker is not asyncio.current_task():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                # Swallow only the cancellation requested above
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
        
        logger.info(f"Session closed: {self.id} (reason: {reason})")
        return True
    
    @property
    def is_closed(self) -> bool:
        return self.state == SessionState.CLOSED
    
    @property
    def has_udp(self) -> bool:
        return self._endpoint is not None
    
    # === Activity ===
    
    def touch(self) -> None:
        """Record control channel activity."""
        self._last_activity = time.monotonic()
    
    def idle_seconds(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self._last_activity
    
    def is_idle(self, timeout_seconds: float, now: float | None = None) -> bool:
        return self.idle_seconds(now) >= timeout_seconds
    
    # === Request stream ===
    
    def enqueue(self, request: str | bytes | ClientRequest) -> bool:
        """
        Append a raw frame or typed request to the session's stream.
        
        Returns:
            False if the session is closed
        """
        if self.state == SessionState.CLOSED:
            return False
        self._inbox.put_nowait(request)
        return True
    
    async def _worker_loop(self) -> None:
        while True:
            request = await self._inbox.get()
            try:
                await self.handle(request)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Unexpected error in session {self.id}")
                self._send_error(f"Internal error: {e}", ErrorCategory.INTERNAL)
            finally:
                self._inbox.task_done()
    
    async def handle(self, request: str | bytes | ClientRequest) -> None:
        """
        Process one request to completion.
        
        Client-visible failures become exactly one error message.
        """
        if self.state == SessionState.CLOSED:
            return
        
        try:
            if isinstance(request, (str, bytes)):
                request = decode_request(request)
            
            handlers = {
                MessageType.UDP_CONNECT: self._handle_connect,
                MessageType.UDP_SEND: self._handle_send,
                MessageType.UDP_DISCONNECT: self._handle_disconnect,
                MessageType.UDP_SEND_TO_CLIENT: self._handle_send_to_client,
                MessageType.PING: self._handle_ping,
            }
            await handlers[request.type](request)
        
        except RelayError as e:
            if e.category in (ErrorCategory.PROTOCOL, ErrorCategory.NOT_CONNECTED,
                              ErrorCategory.INVALID_REQUEST):
                logger.info(f"Session {self.id} request rejected: {e.message}")
            else:
                logger.warning(f"Session {self.id} request failed: {e.message}")
            self._send_error(e.message, e.category)
    
    # === Handlers ===
    
    async def _handle_connect(self, request: UdpConnectRequest) -> None:
        if self._endpoint is not None:
            raise RequestError("UDP already connected")
        
        self.requested_local_ip = request.local_ip
        self.requested_local_port = request.local_port
        target = decide_bind_target(request.local_ip, request.local_port, self._mode)
        
        logger.info(
            f"Session {self.id} binding UDP: requested {request.local_ip}:{request.local_port} "
            f"-> {target.ip}:{target.port} ({self._mode.value})"
        )
        
        endpoint = self._endpoint_factory(self.id)
        endpoint.on_receive(
            lambda data, ip, port: self._on_datagram(endpoint, data, ip, port)
        )
        self._endpoint = endpoint
        self.state = SessionState.UDP_BINDING
        
        try:
            bound_address, bound_port = await endpoint.bind(target.ip, target.port)
        except BindError:
            endpoint.close()
            if self._endpoint is endpoint:
                self._endpoint = None
                self.state = SessionState.OPEN
            raise
        
        self.bound_local_address = bound_address
        self.bound_local_port = bound_port
        if bound_port != request.local_port:
            logger.info(
                f"Session {self.id} port assigned: requested {request.local_port} -> {bound_port}"
            )
        
        visible = await self._resolver.resolve_visible_address(bound_address, self.host_hint)
        self.visible_address = visible
        self.state = SessionState.UDP_READY
        
        self._emit(create_udp_connected(
            visible_address=visible,
            bound_address=bound_address,
            bound_port=bound_port,
            requested_ip=request.local_ip,
            requested_port=request.local_port,
        ))
        logger.info(
            f"Session {self.id} UDP ready: {visible}:{bound_port} "
            f"(bound {bound_address}:{bound_port})"
        )
    
    async def _handle_send(self, request: UdpSendRequest) -> None:
        endpoint = self._require_ready()
        
        payload = request.payload
        if not payload:
            raise RequestError("No data to send")
        
        address, port = request.remote_address, request.remote_port
        if address is None and port is None and self.last_remote_address:
            address, port = self.last_remote_address, self.last_remote_port
        if not address or not port or not 0 < port <= 65535:
            raise RequestError(f"Invalid remote address: {address}:{port}")
        
        bytes_sent = await endpoint.send(payload, address, port)
        self._remember_peer(address, port)
        
        self._emit(UdpSentMessage(
            bytes_sent=bytes_sent,
            remote_address=address,
            remote_port=port,
        ))
    
    async def _handle_send_to_client(self, request: UdpSendToClientRequest) -> None:
        endpoint = self._require_ready()
        
        payload = request.payload
        if not payload:
            raise RequestError("No data to send to client")
        
        target_ip, target_port = self.client_target
        try:
            bytes_sent = await endpoint.send(payload, target_ip, target_port)
        except SendError as e:
            raise e.with_prefix("UDP send to client failed")
        self._remember_peer(target_ip, target_port)
        
        self._emit(UdpSentToClientMessage(
            bytes_sent=bytes_sent,
            target_address=target_ip,
            target_port=target_port,
        ))
    
    async def _handle_disconnect(self, request: UdpDisconnectRequest) -> None:
        if self._endpoint is None:
            logger.debug(f"Session {self.id} udp_disconnect without UDP socket")
            return
        
        self._release_endpoint()
        self.state = SessionState.OPEN
        self._emit(UdpDisconnectedMessage())
        logger.info(f"Session {self.id} UDP disconnected")
    
    async def _handle_ping(self, request: PingRequest) -> None:
        self._emit(PongMessage())
    
    # === UDP ===
    
    @property
    def client_target(self) -> tuple[str, int]:
        """Where udp_send_to_client delivers: the address the client asked to bind."""
        ip = self.requested_local_ip
        if not ip or is_wildcard(ip) or (is_loopback(ip) and not is_ipv4_literal(ip)):
            ip = LOOPBACK_IPV4
        port = self.requested_local_port or self._default_client_target_port
        return ip, port
    
    def _require_ready(self) -> UdpEndpoint:
        if self.state != SessionState.UDP_READY or self._endpoint is None:
            raise RequestError("UDP not connected", ErrorCategory.NOT_CONNECTED)
        return self._endpoint
    
    def _remember_peer(self, address: str, port: int) -> None:
        self.last_remote_address = address
        self.last_remote_port = port
    
    def _on_datagram(self, endpoint: UdpEndpoint, data: bytes, ip: str, port: int) -> None:
        if endpoint is not self._endpoint or self.state != SessionState.UDP_READY:
            logger.debug(f"Session {self.id} dropped datagram from {ip}:{port} (state: {self.state.value})")
            return
        
        logger.debug(f"Session {self.id} received {len(data)} bytes from {ip}:{port}")
        self._remember_peer(ip, port)
        self._emit(create_udp_data(data, ip, port))
    
    def _release_endpoint(self) -> None:
        endpoint, self._endpoint = self._endpoint, None
        if endpoint is not None:
            endpoint.close()
        self.bound_local_address = None
        self.bound_local_port = None
        self.visible_address = None
    
    # === Outbound ===
    
    def send_welcome(self, server_info: dict[str, Any]) -> None:
        self._emit(create_welcome(self.id, server_info))
    
    def _send_error(self, message: str, category: ErrorCategory) -> None:
        self._emit(create_error(message, category))
    
    def _emit(self, message: ServerMessage) -> None:
        try:
            if not self.channel.deliver(encode_message(message)):
                logger.debug(f"Session {self.id} channel closed, dropped {message.type.value}")
        except QueueFullError as e:
            logger.warning(f"Session {self.id} dropped {message.type.value}: {e}")
    
    def to_summary_dict(self) -> dict[str, Any]:
        """Return a summary for the /clients listing."""
        return {
            "id": self.id,
            "remoteAddress": self.remote_address,
            "clientLocalIP": self.requested_local_ip,
            "clientLocalPort": self.requested_local_port,
            "connectedAt": self.created_at.isoformat(),
            "hasUDP": self.has_udp,
            "state": self.state.value,
            "boundAddress": self.bound_local_address,
            "boundPort": self.bound_local_port,
            "lastRemoteAddress": self.last_remote_address,
            "lastRemotePort": self.last_remote_port,
        }
