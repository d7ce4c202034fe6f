"""Database package for promptstore.

This package provides:
- Database models (User, Prompt)
- Async session management
- CRUD operations
- FastAPI dependency injection support
"""

from promptstore.app.db.base import Base
from promptstore.app.db.models import Prompt, User
from promptstore.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    get_async_session,
    get_async_session_maker,
    get_db,
    init_async_db,
)
from promptstore.app.db.dependencies import SessionDep

__all__ = [
    "Base",
    "User",
    "Prompt",
    "close_async_engine",
    "get_async_engine",
    "get_async_session",
    "get_async_session_maker",
    "get_db",
    "init_async_db",
    "SessionDep",
]
