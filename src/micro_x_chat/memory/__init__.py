from micro_x_chat.memory.models import Session, SessionStats
from micro_x_chat.memory.session_manager import SessionManager
from micro_x_chat.memory.store import SessionStore

__all__ = [
    "Session",
    "SessionManager",
    "SessionStats",
    "SessionStore",
]
