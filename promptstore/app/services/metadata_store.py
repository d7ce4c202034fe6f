"""Metadata store for prompt records.

The metadata store is the transactional half of a prompt: it answers
"which of these ids does this owner have" and removes a set of rows in a
single transaction. Two implementations are provided:

- SqlAlchemyMetadataStore: async SQLAlchemy (PostgreSQL in production)
- InMemoryMetadataStore: dictionary-backed double for development and tests
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from promptstore.app.core.logging import get_logger
from promptstore.app.db.async_session import get_async_session_maker
from promptstore.app.db.crud.prompt import delete_owned_prompts, find_owned_prompts
from promptstore.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResourceRecord:
    """A stored resource as known to the metadata store."""
    id: str
    owner_id: str
    blob_key: str


class MetadataStore(ABC):
    """Abstract base class for metadata stores."""

    @abstractmethod
    async def find_owned(self, owner_id: str, ids: Sequence[str]) -> List[ResourceRecord]:
        """Return the records among ``ids`` that belong to ``owner_id``.

        Raises:
            StoreUnavailableError: If the lookup cannot be executed
        """

    @abstractmethod
    async def delete_owned(self, owner_id: str, ids: Sequence[str]) -> List[str]:
        """Delete the owner's records among ``ids`` in one transaction.

        Either every matching row is removed or none is.

        Returns:
            Ids of the rows this transaction actually removed

        Raises:
            StoreUnavailableError: If the transaction cannot be executed
        """


class SqlAlchemyMetadataStore(MetadataStore):
    """Metadata store backed by the ``prompts`` table."""

    def __init__(self, session_maker: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_maker = session_maker

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self._session_maker or get_async_session_maker()

    async def find_owned(self, owner_id: str, ids: Sequence[str]) -> List[ResourceRecord]:
        try:
            async with self._sessions()() as session:
                rows = await find_owned_prompts(session, owner_id, ids)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Prompt ownership lookup failed: {e}")
            raise StoreUnavailableError() from e
        return [ResourceRecord(id=pid, owner_id=owner_id, blob_key=key) for pid, key in rows]

    async def delete_owned(self, owner_id: str, ids: Sequence[str]) -> List[str]:
        try:
            async with self._sessions()() as session:
                async with session.begin():
                    return await delete_owned_prompts(session, owner_id, ids)
        except (SQLAlchemyError, OSError) as e:
            logger.error(f"Prompt delete transaction failed: {e}")
            raise StoreUnavailableError() from e


class InMemoryMetadataStore(MetadataStore):
    """Simple in-memory metadata store for development and tests.

    Set ``available = False`` to simulate an unreachable database.
    """

    def __init__(self, records: Iterable[ResourceRecord] = ()):
        self.records: Dict[str, ResourceRecord] = {r.id: r for r in records}
        self.available = True
        self._lock = asyncio.Lock()

    def add(self, record: ResourceRecord) -> None:
        self.records[record.id] = record

    def count_for(self, owner_id: str) -> int:
        """Number of records currently held for ``owner_id``."""
        return sum(1 for r in self.records.values() if r.owner_id == owner_id)

    def _check_available(self) -> None:
        if not self.available:
            raise StoreUnavailableError()

    async def find_owned(self, owner_id: str, ids: Sequence[str]) -> List[ResourceRecord]:
        self._check_available()
        found = (self.records.get(rid) for rid in ids)
        return [r for r in found if r is not None and r.owner_id == owner_id]

    async def delete_owned(self, owner_id: str, ids: Sequence[str]) -> List[str]:
        async with self._lock:
            self._check_available()
            removed = [
                rid for rid in dict.fromkeys(ids)
                if rid in self.records and self.records[rid].owner_id == owner_id
            ]
            for rid in removed:
                del self.records[rid]
            return removed
