"""Database dependencies for FastAPI dependency injection.

Usage:
    from promptstore.app.db.dependencies import SessionDep

    @router.get("/prompts")
    async def list_prompts(session: SessionDep):
        result = await session.execute(select(Prompt))
        return result.scalars().all()
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from promptstore.app.db.async_session import get_db

SessionDep = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["SessionDep"]
