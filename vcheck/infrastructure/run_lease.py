"""Exclusive lease on a data directory.

Only one process at a time may run workers against a data directory: the
holder is the one allowed to reset PROCESSING rows at startup and to clear the
worker logs. The lease is a non-blocking ``flock`` on ``<data_dir>/vcheck.lock``
and disappears with the holder's process, so a crash never leaves it behind.
"""

import fcntl
import logging
import os
from pathlib import Path
from typing import Optional


class DataDirBusyError(RuntimeError):
    """Another process holds the lease on the data directory."""


class RunLease:
    def __init__(self, path: Path):
        self.path = path
        self._fd: Optional[int] = None
        self.logger = logging.getLogger(__name__)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> None:
        """Takes the lease or raises DataDirBusyError without waiting."""
        if self._fd is not None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_CREAT | os.O_RDWR, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            owner = os.pread(fd, 32, 0).decode("ascii", "replace").strip()
            os.close(fd)
            holder = f" (pid {owner})" if owner else ""
            raise DataDirBusyError(
                f"Data directory {self.path.parent} is in use by another vcheck process{holder}"
            ) from None
        os.ftruncate(fd, 0)
        os.pwrite(fd, f"{os.getpid()}\n".encode("ascii"), 0)
        self._fd = fd
        self.logger.debug(f"Acquired run lease {self.path}")

    def release(self) -> None:
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None
        self.logger.debug(f"Released run lease {self.path}")

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False
