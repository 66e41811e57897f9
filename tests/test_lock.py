"""Tests for exclusive and shared state locking."""

import logging

import pytest

from escapement.errors import ConflictError, LockHeld
from escapement.forge import LockManager


class TestExclusive:
    def test_second_owner_is_refused(self, lock):
        lock.acquire("alice", operation="apply")

        with pytest.raises(LockHeld) as exc_info:
            lock.acquire("bob")
        assert exc_info.value.owner_id == "alice"
        assert lock.current().operation == "apply"

    def test_not_reentrant(self, lock):
        lock.acquire("alice")
        with pytest.raises(LockHeld, match="not reentrant"):
            lock.acquire("alice")

    def test_stale_lock_is_broken_with_warning(self, lock, clock, caplog):
        lock.acquire("alice")
        clock.advance(11)

        with caplog.at_level(logging.WARNING):
            record = lock.acquire("bob")

        assert record.owner_id == "bob"
        assert lock.current().owner_id == "bob"
        assert "Breaking stale state lock held by 'alice'" in caplog.text

    def test_heartbeat_keeps_lock_alive(self, lock, clock):
        lock.acquire("alice")
        clock.advance(8)
        lock.heartbeat("alice")
        clock.advance(8)

        with pytest.raises(LockHeld):
            lock.acquire("bob")

    def test_heartbeat_after_losing_lock(self, lock, clock):
        lock.acquire("alice")
        clock.advance(11)
        lock.acquire("bob")

        with pytest.raises(ConflictError):
            lock.heartbeat("alice")

    def test_release_is_idempotent(self, lock):
        lock.release("alice")
        lock.acquire("alice")
        lock.release("bob")
        assert lock.current().owner_id == "alice"
        lock.release("alice")
        lock.release("alice")
        assert lock.current() is None

    def test_verify(self, lock):
        with pytest.raises(ConflictError):
            lock.verify("alice")
        lock.acquire("alice")
        lock.verify("alice")
        with pytest.raises(LockHeld):
            lock.verify("bob")

    def test_context_manager_releases_on_error(self, lock):
        with pytest.raises(RuntimeError):
            with lock.exclusive("alice"):
                raise RuntimeError("boom")
        assert lock.current() is None

    def test_force_unlock(self, lock):
        assert lock.force_unlock() is None
        lock.acquire("alice")
        removed = lock.force_unlock()
        assert removed.owner_id == "alice"
        assert lock.current() is None


class TestShared:
    def test_many_readers(self, lock):
        lock.acquire_shared("alice")
        lock.acquire_shared("bob")
        assert [r.owner_id for r in lock.readers()] == ["alice", "bob"]

    def test_readers_block_exclusive(self, lock):
        lock.acquire_shared("alice")
        with pytest.raises(LockHeld, match="shared holder"):
            lock.acquire("bob")
        # The failed attempt leaves no exclusive record behind
        assert lock.current() is None

        lock.release_shared("alice")
        lock.acquire("bob")

    def test_exclusive_blocks_readers(self, lock):
        lock.acquire("alice")
        with pytest.raises(LockHeld):
            lock.acquire_shared("bob")
        assert lock.readers() == []

    def test_stale_reader_does_not_block(self, lock, clock):
        lock.acquire_shared("alice")
        clock.advance(11)
        lock.acquire("bob")
        assert lock.readers() == []

    def test_shared_context_manager(self, lock):
        with lock.shared("alice"):
            assert len(lock.readers()) == 1
        assert lock.readers() == []


class TestLockFile:
    def test_lock_is_visible_to_other_managers(self, temp_dir, clock):
        lock_file = temp_dir / "state.json.lock"
        first = LockManager(lock_file, stale_after=10, clock=clock)
        second = LockManager(lock_file, stale_after=10, clock=clock)

        first.acquire("alice")
        assert lock_file.exists()
        with pytest.raises(LockHeld):
            second.acquire("bob")

        first.release("alice")
        assert not lock_file.exists()
        second.acquire("bob")

    def test_shared_readers_on_disk(self, temp_dir, clock):
        lock_file = temp_dir / "state.json.lock"
        reader = LockManager(lock_file, stale_after=10, clock=clock)
        writer = LockManager(lock_file, stale_after=10, clock=clock)

        reader.acquire_shared("ci@runner:1")
        assert (temp_dir / "state.json.lock.readers").is_dir()
        with pytest.raises(LockHeld):
            writer.acquire("alice")

        reader.release_shared("ci@runner:1")
        writer.acquire("alice")

    def test_unreadable_lock_file(self, temp_dir):
        lock_file = temp_dir / "state.json.lock"
        lock_file.write_text("garbage")
        lock = LockManager(lock_file)

        assert lock.current().owner_id == "<unknown>"
        with pytest.raises(LockHeld):
            lock.acquire("alice")
        assert lock.force_unlock() is not None
        lock.acquire("alice")

    def test_describe(self, temp_dir):
        lock = LockManager(temp_dir / "state.json.lock")
        lock.acquire("alice", operation="apply")
        status = lock.describe()
        assert status["exclusive"]["owner_id"] == "alice"
        assert status["readers"] == []
