"""Tests for tick locking."""

import asyncio
import threading
from datetime import timedelta

from cronmaster.core.locks import LockManager, SQLiteLockProvider, new_owner_id
from cronmaster.db import Database


class TestDatabaseLocks:
    def test_second_acquire_fails(self, db, now):
        assert db.acquire_lock("tick", "a", 55, now=now)
        assert not db.acquire_lock("tick", "b", 55, now=now + timedelta(seconds=10))
        assert db.get_lock("tick")["owner"] == "a"

    def test_expired_lock_is_taken_over(self, db, now):
        assert db.acquire_lock("tick", "a", 55, now=now)
        assert db.acquire_lock("tick", "b", 55, now=now + timedelta(seconds=56))
        assert db.get_lock("tick")["owner"] == "b"

    def test_release_then_reacquire(self, db, now):
        assert db.acquire_lock("tick", "a", 55, now=now)
        assert db.release_lock("tick")
        assert db.acquire_lock("tick", "b", 55, now=now)

    def test_release_without_lock(self, db):
        assert not db.release_lock("tick")

    def test_keys_are_independent(self, db, now):
        assert db.acquire_lock("one", "a", 55, now=now)
        assert db.acquire_lock("two", "a", 55, now=now)

    def test_concurrent_acquire_single_winner(self, tmp_path):
        path = tmp_path / "race.db"
        Database(path)
        barrier = threading.Barrier(8)
        results = []

        def contender(owner):
            # Separate handle per thread, as separate processes would have
            handle = Database(path)
            barrier.wait()
            results.append(handle.acquire_lock("tick", owner, 55))

        threads = [threading.Thread(target=contender, args=(f"t{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1
        assert results.count(False) == 7


class TestLockManager:
    def test_owner_ids(self):
        owner = new_owner_id()
        assert owner.startswith("tick_")
        assert len(owner) == len("tick_") + 8
        assert new_owner_id() != owner

    def test_holding_releases_on_exit(self, db):
        manager = LockManager(SQLiteLockProvider(db))

        async def scenario():
            async with manager.holding("tick", 55) as acquired:
                assert acquired
                assert await manager.info("tick") is not None
            return await manager.info("tick")

        assert asyncio.run(scenario()) is None

    def test_holding_releases_on_error(self, db):
        manager = LockManager(SQLiteLockProvider(db))

        async def scenario():
            try:
                async with manager.holding("tick", 55):
                    raise RuntimeError("boom")
            except RuntimeError:
                pass
            return await manager.acquire("tick", 55)

        assert asyncio.run(scenario())

    def test_contended_holding_yields_false_and_keeps_holder(self, db):
        manager = LockManager(SQLiteLockProvider(db))

        async def scenario():
            assert await manager.acquire("tick", 55, owner="first")
            async with manager.holding("tick", 55, owner="second") as acquired:
                assert not acquired
            return await manager.info("tick")

        info = asyncio.run(scenario())
        assert info is not None
        assert info.owner == "first"
        assert not info.is_expired
        assert 0 < info.remaining_seconds <= 55

    def test_default_ttl(self, db):
        manager = LockManager(SQLiteLockProvider(db), default_ttl=30)

        async def scenario():
            await manager.acquire("tick")
            return await manager.info("tick")

        info = asyncio.run(scenario())
        assert (info.expires_at - info.acquired_at).total_seconds() == 30
