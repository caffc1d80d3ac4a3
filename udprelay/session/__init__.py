# Session Manager
# One session per control channel: UDP endpoint ownership, request ordering, cleanup

from udprelay.session.session import (
    ControlChannel,
    Session,
    SessionState,
)
from udprelay.session.manager import SessionManager

__all__ = [
    "ControlChannel",
    "Session",
    "SessionState",
    "SessionManager",
]
