"""Core module for configuration and shared infrastructure."""

from hlsingest.core.config import settings
from hlsingest.core.database import Base, async_session_maker, get_db

__all__ = [
    "settings",
    "Base",
    "async_session_maker",
    "get_db",
]
