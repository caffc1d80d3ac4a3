# UDP Relay - WebSocket to UDP bridge
# Lets browser clients send and receive UDP datagrams through a server-owned socket

__version__ = "1.0.0"

from udprelay.config import DeploymentMode, RelayConfig
from udprelay.errors import ErrorCategory, RelayError
from udprelay.session import Session, SessionManager, SessionState

__all__ = [
    "__version__",
    "DeploymentMode",
    "RelayConfig",
    "ErrorCategory",
    "RelayError",
    "Session",
    "SessionManager",
    "SessionState",
]
