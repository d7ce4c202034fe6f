"""Prompt CRUD operations."""
from typing import List, Sequence, Tuple

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from promptstore.app.db.models import Prompt


async def find_owned_prompts(
    session: AsyncSession,
    owner_id: str,
    prompt_ids: Sequence[str],
) -> List[Tuple[str, str]]:
    """Get ``(id, blob_key)`` for the given prompts that belong to ``owner_id``.

    Prompts owned by someone else are simply not returned.

    Args:
        session: Database session
        owner_id: Owner the prompts must belong to
        prompt_ids: Candidate prompt ids

    Returns:
        List of (id, blob_key) tuples
    """
    if not prompt_ids:
        return []
    result = await session.execute(
        select(Prompt.id, Prompt.blob_key).where(
            Prompt.owner_id == owner_id,
            Prompt.id.in_(list(prompt_ids)),
        )
    )
    return [(row.id, row.blob_key) for row in result]


async def delete_owned_prompts(
    session: AsyncSession,
    owner_id: str,
    prompt_ids: Sequence[str],
) -> List[str]:
    """Delete the given prompts owned by ``owner_id``.

    Uses DELETE ... RETURNING so the caller learns exactly which rows this
    statement removed. Does not commit; the caller owns the transaction.

    Args:
        session: Database session inside an open transaction
        owner_id: Owner the prompts must belong to
        prompt_ids: Prompt ids to delete

    Returns:
        Ids of the rows actually removed
    """
    if not prompt_ids:
        return []
    result = await session.execute(
        delete(Prompt)
        .where(
            Prompt.owner_id == owner_id,
            Prompt.id.in_(list(prompt_ids)),
        )
        .returning(Prompt.id)
        .execution_options(synchronize_session=False)
    )
    return [row[0] for row in result]
