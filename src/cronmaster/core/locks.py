"""Tick locking for CronMaster.

Keeps overlapping ticks from running the same batch of jobs twice. The
lock is time-bounded: a holder that dies before releasing blocks others
only until the TTL runs out. There is no renewal.
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, AsyncIterator

from loguru import logger

from cronmaster.models import utcnow

if TYPE_CHECKING:
    from cronmaster.db import Database


def new_owner_id(prefix: str = "tick") -> str:
    """Generate a unique lock owner ID."""
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


@dataclass
class LockInfo:
    """Information about a lock."""

    lock_key: str
    owner: str
    acquired_at: datetime
    expires_at: datetime

    @property
    def is_expired(self) -> bool:
        """Check if the lock has expired."""
        return utcnow() >= self.expires_at

    @property
    def remaining_seconds(self) -> float:
        """Seconds until lock expires."""
        return (self.expires_at - utcnow()).total_seconds()


class LockProvider(ABC):
    """Abstract base class for lock providers."""

    @abstractmethod
    async def acquire(self, lock_key: str, ttl_seconds: int, owner: str) -> bool:
        """Try to acquire a lock.

        Args:
            lock_key: The lock key
            ttl_seconds: Lock lifetime
            owner: Identifier of the acquiring tick

        Returns:
            True if no unexpired lock existed and ours was stored
        """
        pass

    @abstractmethod
    async def release(self, lock_key: str) -> bool:
        """Release a lock, whoever holds it."""
        pass

    @abstractmethod
    async def get_lock_info(self, lock_key: str) -> LockInfo | None:
        """Get lock information."""
        pass


class SQLiteLockProvider(LockProvider):
    """SQLite-based lock provider.

    Relies on the primary key of the ``locks`` table: of two concurrent
    inserts for the same key, only one can succeed.
    """

    def __init__(self, db: "Database"):
        self._db = db

    async def acquire(self, lock_key: str, ttl_seconds: int, owner: str) -> bool:
        """Try to acquire a lock."""
        return self._db.acquire_lock(lock_key, owner, ttl_seconds)

    async def release(self, lock_key: str) -> bool:
        """Release a lock."""
        return self._db.release_lock(lock_key)

    async def get_lock_info(self, lock_key: str) -> LockInfo | None:
        """Get lock information."""
        row = self._db.get_lock(lock_key)
        if row is None:
            return None
        return LockInfo(
            lock_key=row["lock_key"],
            owner=row["owner"],
            acquired_at=row["acquired_at"],
            expires_at=row["expires_at"],
        )


class LockManager:
    """High-level lock manager.

    Wraps a LockProvider with a scoped acquisition that always releases
    what it acquired, whatever happens inside the block.
    """

    def __init__(self, provider: LockProvider, default_ttl: int = 55):
        """Initialize the lock manager.

        Args:
            provider: Lock provider implementation
            default_ttl: Default lock lifetime in seconds
        """
        self._provider = provider
        self._default_ttl = default_ttl

    async def acquire(
        self,
        lock_key: str,
        ttl_seconds: int | None = None,
        owner: str | None = None,
    ) -> bool:
        """Acquire a lock without waiting.

        Returns:
            True if acquired
        """
        ttl = ttl_seconds or self._default_ttl
        owner = owner or new_owner_id()
        acquired = await self._provider.acquire(lock_key, ttl, owner)
        if acquired:
            logger.debug(f"Lock '{lock_key}' acquired by {owner} for {ttl}s")
        return acquired

    async def release(self, lock_key: str) -> bool:
        """Release a lock."""
        released = await self._provider.release(lock_key)
        if released:
            logger.debug(f"Lock '{lock_key}' released")
        return released

    async def info(self, lock_key: str) -> LockInfo | None:
        """Get information about the current holder, if any."""
        return await self._provider.get_lock_info(lock_key)

    @asynccontextmanager
    async def holding(
        self,
        lock_key: str,
        ttl_seconds: int | None = None,
        owner: str | None = None,
    ) -> AsyncIterator[bool]:
        """Context manager that tries the lock once and yields whether it was won.

        Usage:
            async with lock_manager.holding("tick") as acquired:
                if not acquired:
                    return
                # Do work while holding lock
        """
        acquired = await self.acquire(lock_key, ttl_seconds, owner)
        try:
            yield acquired
        finally:
            if acquired:
                await self.release(lock_key)
