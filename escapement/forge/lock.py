"""
State lock management.

One exclusive holder may mutate state at a time. Plan-only runs take a shared
lock instead: any number of readers, excluded only by a live exclusive holder.
A holder refreshes its heartbeat while it works; a lock whose heartbeat is
older than the staleness window is considered abandoned and is broken with a
warning.

The exclusive lock is a JSON LockRecord file created with O_CREAT | O_EXCL
next to the state file; shared readers are files in a sibling
``<lock>.readers/`` directory. Both sides write their own record first and
check the other side afterwards, so a concurrent reader and writer cannot
both succeed. With no lock file the same protocol runs in memory.
"""

import logging
import os
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

from ..errors import ConflictError, LockHeld
from ..models import LockRecord, utcnow

logger = logging.getLogger(__name__)


class LockManager:
    """
    Exclusive and shared locking of one state.

    Args:
        lock_file: Path of the exclusive lock record, or None for an in-process lock
        stale_after: Seconds without a heartbeat after which a lock is abandoned
        clock: Source of the current time
    """

    def __init__(
        self,
        lock_file: Path | None,
        stale_after: float = 120.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.lock_file = Path(lock_file) if lock_file is not None else None
        self.stale_after = stale_after
        self.clock = clock
        self._mutex = threading.RLock()

        # In-memory storage when there is no lock file
        self._memory_record: LockRecord | None = None
        self._memory_readers: dict[str, LockRecord] = {}

    @property
    def readers_dir(self) -> Path | None:
        if self.lock_file is None:
            return None
        return self.lock_file.with_name(self.lock_file.name + ".readers")

    # =========================================================================
    # Storage
    # =========================================================================

    def _parse(self, path: Path) -> LockRecord | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        try:
            return LockRecord.model_validate_json(text)
        except ValueError:
            # Half-written or foreign file: date it by its mtime so it can still go stale
            logger.warning(f"Unreadable lock record {path}")
            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=utcnow().tzinfo)
            except FileNotFoundError:
                return None
            return LockRecord(owner_id="<unknown>", acquired_at=mtime, heartbeat_at=mtime)

    def _read(self) -> LockRecord | None:
        if self.lock_file is None:
            return self._memory_record
        return self._parse(self.lock_file)

    def _create(self, record: LockRecord) -> bool:
        """Write the exclusive record only if none exists."""
        if self.lock_file is None:
            if self._memory_record is not None:
                return False
            self._memory_record = record
            return True

        self.lock_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(record.model_dump_json())
        return True

    def _overwrite(self, record: LockRecord) -> None:
        if self.lock_file is None:
            self._memory_record = record
            return
        temp_file = self.lock_file.with_name(self.lock_file.name + ".tmp")
        temp_file.write_text(record.model_dump_json(), encoding="utf-8")
        os.replace(temp_file, self.lock_file)

    def _delete(self) -> None:
        if self.lock_file is None:
            self._memory_record = None
            return
        self.lock_file.unlink(missing_ok=True)

    def _reader_path(self, owner_id: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_." else "_" for c in owner_id)
        return self.readers_dir / f"{safe}.json"

    def _write_reader(self, record: LockRecord) -> None:
        if self.lock_file is None:
            self._memory_readers[record.owner_id] = record
            return
        self.readers_dir.mkdir(parents=True, exist_ok=True)
        self._reader_path(record.owner_id).write_text(record.model_dump_json(), encoding="utf-8")

    def _delete_reader(self, owner_id: str) -> None:
        if self.lock_file is None:
            self._memory_readers.pop(owner_id, None)
            return
        self._reader_path(owner_id).unlink(missing_ok=True)

    def readers(self) -> list[LockRecord]:
        """Current shared holders, stale ones included."""
        with self._mutex:
            if self.lock_file is None:
                return sorted(self._memory_readers.values(), key=lambda r: r.owner_id)
            if not self.readers_dir.exists():
                return []
            records = [self._parse(path) for path in sorted(self.readers_dir.glob("*.json"))]
            return [r for r in records if r is not None]

    def current(self) -> LockRecord | None:
        """The exclusive holder, if any."""
        with self._mutex:
            return self._read()

    # =========================================================================
    # Exclusive lock
    # =========================================================================

    def _is_stale(self, record: LockRecord) -> bool:
        return record.is_stale(self.stale_after, now=self.clock())

    def _live_readers(self, exclude: str | None = None) -> list[LockRecord]:
        live = []
        for reader in self.readers():
            if reader.owner_id == exclude:
                continue
            if self._is_stale(reader):
                logger.warning(f"Breaking stale shared lock held by '{reader.owner_id}'")
                self._delete_reader(reader.owner_id)
                continue
            live.append(reader)
        return live

    def acquire(self, owner_id: str, operation: str | None = None) -> LockRecord:
        """
        Take the exclusive lock. Not reentrant.

        Raises:
            LockHeld: If a live owner (including ``owner_id`` itself) holds it,
                or shared readers are active
        """
        with self._mutex:
            existing = self._read()
            if existing is not None:
                if existing.owner_id == owner_id:
                    raise LockHeld(owner_id, f"State lock is already held by '{owner_id}' (not reentrant)")
                if not self._is_stale(existing):
                    raise LockHeld(existing.owner_id)
                age = (self.clock() - existing.heartbeat_at).total_seconds()
                logger.warning(
                    f"Breaking stale state lock held by '{existing.owner_id}' "
                    f"(no heartbeat for {age:.0f}s)"
                )
                self._delete()

            now = self.clock()
            record = LockRecord(owner_id=owner_id, acquired_at=now, heartbeat_at=now, operation=operation)
            if not self._create(record):
                holder = self._read()
                raise LockHeld(holder.owner_id if holder else "<unknown>")

            readers = self._live_readers(exclude=owner_id)
            if readers:
                self._delete()
                raise LockHeld(
                    readers[0].owner_id,
                    f"State is being read by {len(readers)} shared holder(s): "
                    f"{', '.join(r.owner_id for r in readers)}",
                )

            logger.debug(f"Acquired state lock for '{owner_id}'")
            return record

    def heartbeat(self, owner_id: str) -> LockRecord:
        """
        Refresh the heartbeat of a held lock.

        Raises:
            ConflictError: If ``owner_id`` no longer holds the lock
        """
        with self._mutex:
            record = self._read()
            if record is None or record.owner_id != owner_id:
                raise ConflictError(f"State lock is no longer held by '{owner_id}'")
            record = record.model_copy(update={"heartbeat_at": self.clock()})
            self._overwrite(record)
            return record

    def release(self, owner_id: str) -> None:
        """Release the lock; releasing a lock that is not held is a no-op."""
        with self._mutex:
            record = self._read()
            if record is None:
                return
            if record.owner_id != owner_id:
                logger.debug(f"'{owner_id}' released a lock held by '{record.owner_id}'; ignoring")
                return
            self._delete()
            logger.debug(f"Released state lock for '{owner_id}'")

    def verify(self, owner_id: str) -> None:
        """
        Check that ``owner_id`` holds the exclusive lock.

        Raises:
            ConflictError: If it does not
        """
        with self._mutex:
            record = self._read()
            if record is None:
                raise ConflictError(f"State lock is not held (expected owner '{owner_id}')")
            if record.owner_id != owner_id:
                raise LockHeld(record.owner_id, f"State lock is held by '{record.owner_id}', not '{owner_id}'")

    def force_unlock(self) -> LockRecord | None:
        """Remove the exclusive record regardless of owner. Returns the removed record."""
        with self._mutex:
            record = self._read()
            if record is not None:
                logger.warning(f"Force-unlocking state held by '{record.owner_id}'")
                self._delete()
            return record

    @contextmanager
    def exclusive(self, owner_id: str, operation: str | None = None) -> Iterator[LockRecord]:
        record = self.acquire(owner_id, operation)
        try:
            yield record
        finally:
            self.release(owner_id)

    # =========================================================================
    # Shared lock
    # =========================================================================

    def acquire_shared(self, owner_id: str) -> LockRecord:
        """
        Take a shared (read) lock.

        Raises:
            LockHeld: If a live exclusive holder exists
        """
        with self._mutex:
            now = self.clock()
            record = LockRecord(owner_id=owner_id, acquired_at=now, heartbeat_at=now, operation="read")
            self._write_reader(record)

            holder = self._read()
            if holder is not None:
                if not self._is_stale(holder):
                    self._delete_reader(owner_id)
                    raise LockHeld(holder.owner_id)
                logger.warning(f"Breaking stale state lock held by '{holder.owner_id}'")
                self._delete()

            logger.debug(f"Acquired shared state lock for '{owner_id}'")
            return record

    def release_shared(self, owner_id: str) -> None:
        with self._mutex:
            self._delete_reader(owner_id)

    @contextmanager
    def shared(self, owner_id: str) -> Iterator[LockRecord]:
        record = self.acquire_shared(owner_id)
        try:
            yield record
        finally:
            self.release_shared(owner_id)

    def describe(self) -> dict:
        """Lock status as plain data, for display."""
        holder = self.current()
        return {
            "exclusive": holder.model_dump(mode="json") if holder else None,
            "readers": [r.model_dump(mode="json") for r in self.readers()],
        }
