"""
Session Manager

Registry of all live relay sessions.

Sessions are registered when a control channel is accepted and removed when
it closes, times out, or the relay shuts down. The manager is the only writer
of the registry; every insert and removal happens under its lock.

Inbound control messages are routed to the owning session's request stream.
A background sweeper force-closes sessions whose client has sent nothing for
the configured idle timeout.
"""

import asyncio
import logging
from typing import Any

from udprelay.config import DeploymentMode, RelayConfig
from udprelay.protocol.messages import UdpSendToClientRequest
from udprelay.resolver.address import AddressResolver
from udprelay.session.session import (
    ControlChannel,
    EndpointFactory,
    Session,
    SessionState,
)
from udprelay.udp.endpoint import UdpEndpoint

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Manages the lifecycle of relay sessions.
    
    Thread-safe for async operations using asyncio locks.
    """
    
    def __init__(
        self,
        resolver: AddressResolver,
        deployment_mode: DeploymentMode = DeploymentMode.UNRESTRICTED,
        idle_timeout_seconds: float = 30.0,
        sweep_interval_seconds: float = 5.0,
        max_sessions: int = 100,
        server_info: dict[str, Any] | None = None,
        endpoint_factory: EndpointFactory = UdpEndpoint,
        default_client_target_port: int = 8081,
    ):
        """
        Initialize the session manager.
        
        Args:
            resolver: Visible address resolution shared by all sessions
            deployment_mode: Binding policy applied to every session
            idle_timeout_seconds: Close sessions silent for this long
            sweep_interval_seconds: How often to check for idle sessions
            max_sessions: Max concurrent sessions
            server_info: Payload of the welcome message's serverInfo
            endpoint_factory: Creates UDP endpoints (injectable for tests)
            default_client_target_port: Fallback port for udp_send_to_client
        """
        self._resolver = resolver
        self._mode = deployment_mode
        self._idle_timeout = idle_timeout_seconds
        self._sweep_interval = sweep_interval_seconds
        self._max_sessions = max_sessions
        self._server_info = server_info or {}
        self._endpoint_factory = endpoint_factory
        self._default_client_target_port = default_client_target_port
        
        # session_id -> Session
        self._sessions: dict[str, Session] = {}
        
        # Lock for registry mutations
        self._lock = asyncio.Lock()
        
        # Background idle sweeper
        self._sweeper_task: asyncio.Task | None = None
    
    @classmethod
    def from_config(cls, config: RelayConfig, resolver: AddressResolver) -> "SessionManager":
        return cls(
            resolver=resolver,
            deployment_mode=config.deployment_mode,
            idle_timeout_seconds=config.idle_timeout_seconds,
            sweep_interval_seconds=config.effective_sweep_interval,
            max_sessions=config.max_connections,
            server_info=config.server_info,
            default_client_target_port=config.default_client_target_port,
        )
    
    @property
    def deployment_mode(self) -> DeploymentMode:
        return self._mode
    
    @property
    def idle_timeout_seconds(self) -> float:
        return self._idle_timeout
    
    async def start(self) -> None:
        """Start the idle sweeper."""
        if self._sweeper_task is None:
            self._sweeper_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                f"Session sweeper started (idle timeout: {self._idle_timeout}s, "
                f"mode: {self._mode.value})"
            )
    
    async def stop(self) -> None:
        """Stop the idle sweeper."""
        if self._sweeper_task:
            task, self._sweeper_task = self._sweeper_task, None
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
            logger.info("Session sweeper stopped")
    
    async def shutdown(self) -> None:
        """Stop the sweeper and close every session and its control channel."""
        await self.stop()
        
        async with self._lock:
            session_ids = list(self._sessions)
        
        for session_id in session_ids:
            await self.close_session(
                session_id,
                reason="server shutdown",
                close_code=1000,
                close_reason="Server shutdown",
            )
        logger.info(f"Session manager shut down ({len(session_ids)} sessions closed)")
    
    async def _sweep_loop(self) -> None:
        """Periodically close idle sessions."""
        while True:
            try:
                await asyncio.sleep(self._sweep_interval)
                await self.expire_idle_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in session sweep loop: {e}")
    
    async def expire_idle_sessions(self, now: float | None = None) -> list[str]:
        """
        Close every session idle for at least the timeout.
        
        Args:
            now: Monotonic clock reading (defaults to the current time)
        
        Returns:
            Ids of the sessions that were closed
        """
        async with self._lock:
            expired = [
                session_id for session_id, session in self._sessions.items()
                if session.is_idle(self._idle_timeout, now)
            ]
        
        closed = []
        for session_id in expired:
            logger.info(f"Session {session_id} idle for {self._idle_timeout}s, closing")
            if await self.close_session(
                session_id,
                reason="idle timeout",
                close_code=1000,
                close_reason="Connection timeout",
            ):
                closed.append(session_id)
        return closed
    
    async def open_session(
        self,
        channel: ControlChannel,
        remote_address: str | None = None,
        host_hint: str | None = None,
    ) -> Session | None:
        """
        Register a session for a newly accepted control channel.
        
        Sends the welcome message and starts the session's request worker.
        
        Args:
            channel: Outbound half of the control channel
            remote_address: Peer address of the control channel
            host_hint: Host the client used to reach the relay
        
        Returns:
            The new Session, or None if the relay is at capacity
        """
        session = Session(
            channel=channel,
            resolver=self._resolver,
            deployment_mode=self._mode,
            endpoint_factory=self._endpoint_factory,
            remote_address=remote_address,
            host_hint=host_hint,
            default_client_target_port=self._default_client_target_port,
        )
        
        async with self._lock:
            if len(self._sessions) >= self._max_sessions:
                logger.warning(
                    f"Rejecting control channel from {remote_address}: "
                    f"{self._max_sessions} sessions already open"
                )
                return None
            self._sessions[session.id] = session
        
        session.start()
        session.send_welcome(self._server_info)
        
        logger.info(f"Session opened: {session.id} (remote: {remote_address}, host: {host_hint})")
        return session
    
    async def dispatch(self, session_id: str, raw: str | bytes) -> bool:
        """
        Route one inbound control channel frame to its session.
        
        Counts as activity for the idle timeout.
        
        Returns:
            False if the session no longer exists
        """
        async with self._lock:
            session = self._sessions.get(session_id)
        
        if session is None:
            logger.warning(f"Dropping message for unknown session {session_id}")
            return False
        
        session.touch()
        return session.enqueue(raw)
    
    async def send_to_client(self, session_id: str, data: bytes) -> Session | None:
        """
        Queue a server-initiated datagram toward the client's requested address.
        
        The outcome is reported to the client over its control channel.
        
        Returns:
            The target Session, or None if not found
        """
        async with self._lock:
            session = self._sessions.get(session_id)
        
        if session is None:
            return None
        
        session.enqueue(UdpSendToClientRequest(data=list(data)))
        return session
    
    async def close_session(
        self,
        session_id: str,
        reason: str | None = None,
        close_code: int | None = None,
        close_reason: str = "",
    ) -> bool:
        """
        Remove a session and release its resources. Idempotent.
        
        Args:
            session_id: The session to close
            reason: Reason for logging
            close_code: If set, also close the control channel with this code
            close_reason: Close reason sent with close_code
        
        Returns:
            True if the session existed
        """
        async with self._lock:
            session = self._sessions.pop(session_id, None)
        
        if session is None:
            return False
        
        try:
            await session.close(reason)
        finally:
            # The session is out of the registry; its channel must not outlive it
            if close_code is not None:
                try:
                    await session.channel.close(close_code, close_reason)
                except Exception as e:
                    logger.debug(f"Closing control channel of {session_id} failed: {e}")
        
        return True
    
    async def get_session(self, session_id: str) -> Session | None:
        """Get a session by id."""
        async with self._lock:
            return self._sessions.get(session_id)
    
    async def list_sessions(self, state: SessionState | None = None) -> list[Session]:
        """List sessions, optionally filtered by state."""
        async with self._lock:
            sessions = list(self._sessions.values())
        
        if state:
            sessions = [s for s in sessions if s.state == state]
        return sessions
    
    @property
    def session_count(self) -> int:
        """Number of live sessions."""
        return len(self._sessions)
    
    @property
    def udp_count(self) -> int:
        """Number of sessions holding a UDP socket."""
        return sum(1 for s in self._sessions.values() if s.has_udp)
