"""
Mutual exclusion for install directories.

Within one process, installs into the same directory are serialized with an asyncio lock.
Across processes, an exclusive OS lock is held on a lock file inside the directory; the operating system
drops it when the holder exits, so a crashed installer never leaves a lock behind. While held, the file
contains the owner's pid for diagnostics.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
import weakref
from dataclasses import dataclass, field
from types import TracebackType
from typing import IO

from kotlinls.ls_exceptions import InstallLockError

log = logging.getLogger(__name__)

LOCK_FILENAME = ".install.lock"
DEFAULT_LOCK_TIMEOUT = 600.0

if sys.platform == "win32":
    import msvcrt

    _LOCK_SIZE = 1024

    def _lock_file(f: IO[str]) -> bool:
        try:
            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, _LOCK_SIZE)
            return True
        except OSError:
            return False

    def _unlock_file(f: IO[str]) -> None:
        try:
            f.seek(0)
            msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, _LOCK_SIZE)
        except OSError as e:
            log.debug(f"Could not unlock {f.name}: {e}")

else:
    import fcntl

    def _lock_file(f: IO[str]) -> bool:
        try:
            fcntl.flock(f, fcntl.LOCK_EX | fcntl.LOCK_NB)
            return True
        except BlockingIOError:
            return False

    def _unlock_file(f: IO[str]) -> None:
        fcntl.flock(f, fcntl.LOCK_UN)


def read_lock_owner(lock_path: str) -> int | None:
    """
    :return: the pid stored in the lock file, None if the file is missing, empty or unreadable
    """
    try:
        with open(lock_path, encoding="utf-8") as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return None


@dataclass
class _DirectoryLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class InstallDirectoryLock:
    """
    Async context manager guaranteeing that at most one install runs per directory.
    """

    # per event loop: normalized install dir -> lock; entries are dropped when their last user leaves
    _process_locks: weakref.WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, _DirectoryLock]] = weakref.WeakKeyDictionary()

    def __init__(self, install_dir: str, timeout: float = DEFAULT_LOCK_TIMEOUT, poll_interval: float = 0.5) -> None:
        self.install_dir = os.path.abspath(install_dir)
        self.lock_path = os.path.join(self.install_dir, LOCK_FILENAME)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._dir_key = os.path.normcase(self.install_dir)
        self._process_lock: asyncio.Lock | None = None
        self._lock_file: IO[str] | None = None

    def _register(self) -> asyncio.Lock:
        locks = self._process_locks.setdefault(asyncio.get_running_loop(), {})
        entry = locks.setdefault(self._dir_key, _DirectoryLock())
        entry.users += 1
        return entry.lock

    def _unregister(self) -> None:
        loop = asyncio.get_running_loop()
        locks = self._process_locks.get(loop)
        if locks is None or self._dir_key not in locks:
            return
        entry = locks[self._dir_key]
        entry.users -= 1
        if entry.users <= 0:
            del locks[self._dir_key]
            if not locks:
                del self._process_locks[loop]

    def _try_lock(self) -> bool:
        # "a+" creates the file if needed without truncating what a current holder wrote
        f = open(self.lock_path, "a+", encoding="utf-8")
        if not _lock_file(f):
            f.close()
            return False
        f.seek(0)
        f.truncate()
        f.write(str(os.getpid()))
        f.flush()
        self._lock_file = f
        return True

    async def _acquire_file_lock(self) -> None:
        os.makedirs(self.install_dir, exist_ok=True)
        deadline = time.monotonic() + self.timeout
        while not self._try_lock():
            if time.monotonic() >= deadline:
                raise InstallLockError(self.lock_path, read_lock_owner(self.lock_path))
            await asyncio.sleep(self.poll_interval)
        log.debug(f"Acquired install lock {self.lock_path}")

    def _release_file_lock(self) -> None:
        f = self._lock_file
        if f is None:
            return
        self._lock_file = None
        try:
            # the file itself is never removed; only its content is cleared
            f.seek(0)
            f.truncate()
            f.flush()
            _unlock_file(f)
        finally:
            f.close()

    async def __aenter__(self) -> InstallDirectoryLock:
        process_lock = self._register()
        try:
            await process_lock.acquire()
        except BaseException:
            self._unregister()
            raise
        try:
            await self._acquire_file_lock()
        except BaseException:
            process_lock.release()
            self._unregister()
            raise
        self._process_lock = process_lock
        return self

    async def __aexit__(
        self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: TracebackType | None
    ) -> None:
        try:
            self._release_file_lock()
        finally:
            if self._process_lock is not None:
                self._process_lock.release()
                self._process_lock = None
                self._unregister()
