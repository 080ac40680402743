"""
File Lock
=========

Cross-process mutual exclusion for the flat-file tick store.

The lock is a file created with O_CREAT | O_EXCL: creation succeeds for
exactly one contender. Everyone else sleeps with exponential backoff
(capped) and retries until the total wait bound or the caller's deadline
runs out, then gets StorageUnavailable. Nobody blocks indefinitely.

A lock file older than stale_seconds is assumed to belong to a crashed
writer and is removed.

Usage
-----
    lock = FileLock(storage_dir / "tick-history.lock", timeout=5.0)
    with lock:
        ...  # read-modify-write

    with lock.acquire(deadline=time.monotonic() + 1.0):
        ...
"""

import logging
import os
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import StorageUnavailable

logger = logging.getLogger("Tracker.Lock")


class FileLock:
    """Exclusive-create lock file with bounded, backed-off acquisition."""

    def __init__(
        self,
        path: Union[str, Path],
        timeout: float = 5.0,
        initial_backoff: float = 0.01,
        max_backoff: float = 0.2,
        stale_seconds: float = 30.0,
    ):
        self.path = Path(path)
        self.timeout = timeout
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.stale_seconds = stale_seconds
        # Serialises threads of this process before they contend on the file
        self._thread_lock = threading.Lock()
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _try_create(self) -> bool:
        try:
            fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        try:
            os.write(fd, f"{os.getpid()}\n".encode())
        finally:
            os.close(fd)
        return True

    def _break_if_stale(self) -> None:
        try:
            seen = self.path.stat()
        except FileNotFoundError:
            return
        age = time.time() - seen.st_mtime
        if age > self.stale_seconds and self._remove_if_same(seen):
            logger.warning(f"Removed stale lock {self.path} (age {age:.1f}s)")

    def _remove_if_same(self, seen: os.stat_result) -> bool:
        """
        Remove the lock file only if it is still the file described by `seen`.

        The file is renamed to a private name first. If the inode differs, a
        contender created a new lock after the stat, and that lock is linked
        back into place instead of being deleted.
        """
        private = self.path.with_name(
            f"{self.path.name}.{os.getpid()}.{threading.get_ident()}.stale"
        )
        try:
            os.rename(self.path, private)
        except FileNotFoundError:
            return False
        try:
            if os.stat(private).st_ino == seen.st_ino:
                return True
            try:
                os.link(private, self.path)
            except FileExistsError:
                logger.warning(f"Lock {self.path} re-created while restoring it")
            return False
        finally:
            os.unlink(private)

    def _acquire(self, deadline: Optional[float] = None) -> None:
        start = time.monotonic()
        limit = start + self.timeout
        if deadline is not None:
            limit = min(limit, deadline)

        if not self._thread_lock.acquire(timeout=max(0.0, limit - start)):
            raise StorageUnavailable(f"Lock busy: {self.path.name}", retry_after=1)

        backoff = self.initial_backoff
        attempts = 0
        try:
            while True:
                attempts += 1
                if self._try_create():
                    self._held = True
                    if attempts > 1:
                        logger.debug(f"Acquired {self.path.name} after {attempts} attempts")
                    return

                self._break_if_stale()

                now = time.monotonic()
                if now >= limit:
                    raise StorageUnavailable(
                        f"Lock busy: {self.path.name} (waited {now - start:.2f}s)",
                        retry_after=1,
                    )
                time.sleep(min(backoff, limit - now))
                backoff = min(backoff * 2, self.max_backoff)
        except BaseException:
            self._thread_lock.release()
            raise

    def release(self) -> None:
        if not self._held:
            return
        try:
            self.path.unlink()
        except FileNotFoundError:
            logger.warning(f"Lock file {self.path} vanished before release")
        finally:
            self._held = False
            self._thread_lock.release()

    @contextmanager
    def acquire(self, deadline: Optional[float] = None) -> Iterator["FileLock"]:
        """
        Hold the lock for the duration of the block.

        Args:
            deadline: time.monotonic() value after which acquisition gives up

        Raises:
            StorageUnavailable: When the lock could not be taken in time
        """
        self._acquire(deadline)
        try:
            yield self
        finally:
            self.release()

    def __enter__(self) -> "FileLock":
        self._acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
