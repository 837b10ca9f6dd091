from .models import (
    AuthSession,
    Base,
    DoseLog,
    NotificationRecord,
    Schedule,
    User,
)
from .session import build_engine, build_session_factory, init_db

__all__ = [
    "AuthSession",
    "Base",
    "DoseLog",
    "NotificationRecord",
    "Schedule",
    "User",
    "build_engine",
    "build_session_factory",
    "init_db",
]
