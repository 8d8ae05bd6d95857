"""Per-key mutual exclusion for capacity-changing operations.

Every mutation of an occurrence's availability runs inside ``locks.acquire(occurrence_id)``.
Series-wide edits acquire all member keys at once, always in sorted order so two
overlapping multi-key acquisitions cannot deadlock. On PostgreSQL the services
additionally take a transaction-scoped advisory lock so several processes serialize too.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Hashable

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from .database import is_postgresql

logger = logging.getLogger(__name__)


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class KeyedLock:
    """Registry of asyncio locks keyed by resource id."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, _Entry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def locked(self, key: Hashable) -> bool:
        entry = self._entries.get(key)
        return entry is not None and entry.lock.locked()

    @asynccontextmanager
    async def acquire(self, *keys: Hashable) -> AsyncIterator[None]:
        """Hold the locks for all ``keys`` for the duration of the block."""
        ordered = sorted(set(keys), key=str)
        entries = []
        for key in ordered:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = _Entry()
            entry.users += 1
            entries.append((key, entry))

        acquired = []
        try:
            for _, entry in entries:
                await entry.lock.acquire()
                acquired.append(entry)
            yield
        finally:
            for entry in reversed(acquired):
                entry.lock.release()
            for key, entry in entries:
                entry.users -= 1
                if entry.users == 0:
                    del self._entries[key]


# Process-wide registry shared by request handlers and workers
occurrence_locks = KeyedLock()


async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """Take a PostgreSQL transaction-scoped advisory lock; no-op elsewhere."""
    if not is_postgresql(session):
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
        {"key": key},
    )
    logger.debug("Advisory lock acquired", extra={"lock_key": key})
