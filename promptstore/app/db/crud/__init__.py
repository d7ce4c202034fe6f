"""CRUD operations package.

- user.py: identity lookups
- prompt.py: ownership-scoped prompt lookup and deletion
"""

from promptstore.app.db.crud.prompt import delete_owned_prompts, find_owned_prompts
from promptstore.app.db.crud.user import lookup_user_by_hash

__all__ = [
    "lookup_user_by_hash",
    "find_owned_prompts",
    "delete_owned_prompts",
]
