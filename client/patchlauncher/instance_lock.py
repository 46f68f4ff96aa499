"""Named per-user locks: "one launcher instance" and "one self-update workflow".

Each lock is an exclusive OS file lock on a file in the config dir (flock on POSIX,
msvcrt on Windows); on Windows a named kernel mutex is taken as well. The OS drops
both when the holding process dies, so a lock abandoned by a crashed process is
simply acquired by the next one. A lock held by a live process is never taken over.
"""

import logging
import os
import time
from pathlib import Path
from typing import IO, Optional

from patchlauncher.config import get_instance_lock_path, get_update_lock_path
from patchlauncher.errors import LockUnavailable

log = logging.getLogger(__name__)

INSTANCE_LOCK_NAME = "instance"
UPDATE_LOCK_NAME = "self-update"
INSTANCE_LOCK_TIMEOUT = 3.0
UPDATE_LOCK_TIMEOUT = 2.0

_WAIT_OBJECT_0 = 0x0
_WAIT_ABANDONED = 0x80


class NamedLock:
    """
    System-wide (per user) mutual exclusion identified by name. acquire() waits up
    to timeout seconds and returns False if another live process holds the lock.
    """

    def __init__(self, name: str, path: Path, poll_interval: float = 0.1) -> None:
        self.name = name
        self.path = path
        self._poll_interval = poll_interval
        self._file: Optional[IO[str]] = None
        self._mutex_handle = None  # Windows: keep handle so mutex is not released

    @property
    def held(self) -> bool:
        return self._file is not None

    def holder_pid(self) -> Optional[int]:
        """PID recorded by the current holder, if readable."""
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return int(raw) if raw.isdigit() else None

    def acquire(self, timeout: float = UPDATE_LOCK_TIMEOUT) -> bool:
        """Acquire within timeout seconds. Idempotent while held."""
        if self.held:
            return True
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + timeout
        if os.name == "nt" and not self._acquire_mutex(timeout):
            log.warning("Lock %s: named mutex is held by another process", self.name)
            return False
        while True:
            if self._try_file_lock():
                log.debug("Acquired lock %s (%s)", self.name, self.path)
                return True
            if time.monotonic() >= deadline:
                self._release_mutex()
                log.warning("Lock %s is held by another process (pid %s)", self.name, self.holder_pid())
                return False
            time.sleep(self._poll_interval)

    def release(self) -> None:
        """Release the lock so the next process can acquire it. Idempotent."""
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
            self._file = None
            log.debug("Released lock %s", self.name)
        self._release_mutex()

    def __enter__(self) -> "NamedLock":
        if not self.acquire():
            raise LockUnavailable(self.name, self.holder_pid())
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _try_file_lock(self) -> bool:
        try:
            # a+ keeps the current holder's PID readable until we actually own the lock
            fh = open(self.path, "a+", encoding="utf-8")
        except OSError as e:
            log.warning("Lock %s: cannot open %s: %s", self.name, self.path, e)
            return False
        try:
            fh.seek(0)
            if os.name == "nt":
                import msvcrt
                msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
            else:
                import fcntl
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            fh.close()
            return False
        previous = fh.read().strip()
        if previous.isdigit() and int(previous) != os.getpid():
            log.debug("Lock %s was abandoned by pid %s; taking it", self.name, previous)
        fh.seek(0)
        fh.truncate()
        fh.write(str(os.getpid()))
        fh.flush()
        self._file = fh
        return True

    def _acquire_mutex(self, timeout: float) -> bool:
        """Windows: wait on a named mutex. An abandoned mutex counts as acquired."""
        try:
            import ctypes
            kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
            handle = kernel32.CreateMutexW(None, False, f"Local\\PatchLauncher_{self.name}")
            if not handle:
                return True  # mutex API unavailable: the file lock alone decides
            result = kernel32.WaitForSingleObject(handle, int(timeout * 1000))
            if result in (_WAIT_OBJECT_0, _WAIT_ABANDONED):
                if result == _WAIT_ABANDONED:
                    log.debug("Lock %s: named mutex was abandoned; taking it", self.name)
                self._mutex_handle = handle
                return True
            kernel32.CloseHandle(handle)
            return False
        except (AttributeError, OSError):
            return True

    def _release_mutex(self) -> None:
        if self._mutex_handle is None or os.name != "nt":
            return
        try:
            import ctypes
            kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
            kernel32.ReleaseMutex(self._mutex_handle)
            kernel32.CloseHandle(self._mutex_handle)
        except (AttributeError, OSError):
            pass
        self._mutex_handle = None


def instance_lock() -> NamedLock:
    """Lock held for the lifetime of one running launcher."""
    return NamedLock(INSTANCE_LOCK_NAME, get_instance_lock_path())


def update_lock() -> NamedLock:
    """Lock held for the duration of one self-update workflow."""
    return NamedLock(UPDATE_LOCK_NAME, get_update_lock_path())
