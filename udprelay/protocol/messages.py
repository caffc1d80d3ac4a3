"""
Control Channel Messages

Every message exchanged with a relay client is a JSON object with a `type`
discriminator. Field names are camelCase on the wire; the models below use
snake_case attributes with explicit aliases.

Client requests:
- udp_connect -> udp_connected | error
- udp_send -> udp_sent | error
- udp_disconnect -> udp_disconnected
- udp_send_to_client -> udp_sent_to_client | error
- ping -> pong

Server-initiated:
- welcome on accept
- udp_data for every inbound datagram
- error on any failure

Datagram payloads travel as arrays of byte values (0-255). Requests may also
carry `data` as a string, which is sent UTF-8 encoded.
"""

import json
import time
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from udprelay.errors import ErrorCategory, ProtocolError


class MessageType(str, Enum):
    """Discriminator values of the control channel protocol."""
    # Client requests
    UDP_CONNECT = "udp_connect"
    UDP_SEND = "udp_send"
    UDP_DISCONNECT = "udp_disconnect"
    UDP_SEND_TO_CLIENT = "udp_send_to_client"
    PING = "ping"
    
    # Responses
    UDP_CONNECTED = "udp_connected"
    UDP_SENT = "udp_sent"
    UDP_DISCONNECTED = "udp_disconnected"
    UDP_SENT_TO_CLIENT = "udp_sent_to_client"
    PONG = "pong"
    
    # Server-initiated
    WELCOME = "welcome"
    UDP_DATA = "udp_data"
    ERROR = "error"


def now_ms() -> int:
    """Wall clock in epoch milliseconds, as carried by every server message."""
    return int(time.time() * 1000)


# === Client requests ===

class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")
    
    type: MessageType


def _payload_to_bytes(value: Any) -> bytes:
    if value is None:
        return b""
    if isinstance(value, str):
        return value.encode("utf-8")
    return bytes(value)


class _DataRequest(_Request):
    data: list[int] | str | None = Field(
        default=None,
        description="Datagram payload: byte values or a UTF-8 string"
    )
    
    @field_validator("data")
    @classmethod
    def _check_byte_values(cls, value):
        if isinstance(value, list):
            for item in value:
                if not 0 <= item <= 255:
                    raise ValueError(f"byte value out of range: {item}")
        return value
    
    @property
    def payload(self) -> bytes:
        return _payload_to_bytes(self.data)


class UdpConnectRequest(_Request):
    """Ask the relay to open a UDP socket for this session."""
    type: MessageType = MessageType.UDP_CONNECT
    local_ip: str = Field(default="0.0.0.0", alias="localIP")
    local_port: int = Field(default=0, ge=0, le=65535, alias="localPort")
    
    @field_validator("local_ip", "local_port", mode="before")
    @classmethod
    def _null_means_default(cls, value, info):
        if value is None or value == "":
            return "0.0.0.0" if info.field_name == "local_ip" else 0
        return value


class UdpSendRequest(_DataRequest):
    """Send one datagram to an explicit peer (or the last peer when omitted)."""
    type: MessageType = MessageType.UDP_SEND
    remote_address: str | None = Field(default=None, alias="remoteAddress")
    remote_port: int | None = Field(default=None, alias="remotePort")


class UdpSendToClientRequest(_DataRequest):
    """Send one datagram to the address the client asked to bind."""
    type: MessageType = MessageType.UDP_SEND_TO_CLIENT


class UdpDisconnectRequest(_Request):
    type: MessageType = MessageType.UDP_DISCONNECT


class PingRequest(_Request):
    type: MessageType = MessageType.PING


ClientRequest = Union[
    UdpConnectRequest,
    UdpSendRequest,
    UdpSendToClientRequest,
    UdpDisconnectRequest,
    PingRequest,
]

REQUEST_MODELS: dict[str, type[_Request]] = {
    MessageType.UDP_CONNECT.value: UdpConnectRequest,
    MessageType.UDP_SEND.value: UdpSendRequest,
    MessageType.UDP_SEND_TO_CLIENT.value: UdpSendToClientRequest,
    MessageType.UDP_DISCONNECT.value: UdpDisconnectRequest,
    MessageType.PING.value: PingRequest,
}


def decode_request(raw: str | bytes) -> ClientRequest:
    """
    Parse one control channel frame into a typed request.
    
    Raises:
        ProtocolError: If the frame is not a JSON object, the type is unknown,
            or the fields fail validation
    """
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError):
        raise ProtocolError("Invalid message format")
    
    if not isinstance(payload, dict):
        raise ProtocolError("Invalid message format")
    
    message_type = payload.get("type")
    model = REQUEST_MODELS.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise ProtocolError(f"Unknown message type: {message_type}")
    
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(loc) for loc in err['loc'])}: {err['msg']}"
            for err in e.errors()
        )
        raise ProtocolError(f"Invalid {message_type} request: {details}")


# === Server messages ===

class ServerMessage(BaseModel):
    """Base of every relay-originated message."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
    
    type: MessageType
    timestamp: int = Field(default_factory=now_ms)


class WelcomeMessage(ServerMessage):
    type: MessageType = MessageType.WELCOME
    client_id: str
    server_info: dict[str, Any] = Field(default_factory=dict)


class UdpConnectedMessage(ServerMessage):
    """
    Bind confirmation.
    
    Carries both the client-visible address and the raw OS bind so clients
    can reconcile NAT or platform remapping, plus the original request.
    """
    type: MessageType = MessageType.UDP_CONNECTED
    local_address: str
    local_port: int
    requested_ip: str = Field(alias="requestedIP")
    requested_port: int
    server_bind_address: str
    server_bind_port: int


class UdpSentMessage(ServerMessage):
    type: MessageType = MessageType.UDP_SENT
    bytes_sent: int
    remote_address: str
    remote_port: int


class UdpSentToClientMessage(ServerMessage):
    type: MessageType = MessageType.UDP_SENT_TO_CLIENT
    bytes_sent: int
    target_address: str
    target_port: int


class UdpDisconnectedMessage(ServerMessage):
    type: MessageType = MessageType.UDP_DISCONNECTED


class UdpDataMessage(ServerMessage):
    type: MessageType = MessageType.UDP_DATA
    data: list[int]
    remote_address: str
    remote_port: int


class PongMessage(ServerMessage):
    type: MessageType = MessageType.PONG


class ErrorMessage(ServerMessage):
    type: MessageType = MessageType.ERROR
    message: str
    category: ErrorCategory = ErrorCategory.INTERNAL


def encode_message(message: ServerMessage) -> str:
    """Serialize a server message to its wire form."""
    return message.model_dump_json(by_alias=True)


# === Convenience constructors ===

def create_welcome(client_id: str, server_info: dict[str, Any]) -> WelcomeMessage:
    return WelcomeMessage(client_id=client_id, server_info=server_info)


def create_udp_connected(
    visible_address: str,
    bound_address: str,
    bound_port: int,
    requested_ip: str,
    requested_port: int,
) -> UdpConnectedMessage:
    """
    Create a bind confirmation.
    
    The visible address is what the client should advertise to peers; the
    bound address is what the OS actually bound (often the wildcard).
    """
    return UdpConnectedMessage(
        local_address=visible_address,
        local_port=bound_port,
        requested_ip=requested_ip,
        requested_port=requested_port,
        server_bind_address=bound_address,
        server_bind_port=bound_port,
    )


def create_udp_data(data: bytes, remote_address: str, remote_port: int) -> UdpDataMessage:
    return UdpDataMessage(
        data=list(data),
        remote_address=remote_address,
        remote_port=remote_port,
    )


def create_error(message: str, category: ErrorCategory = ErrorCategory.INTERNAL) -> ErrorMessage:
    return ErrorMessage(message=message, category=category)
