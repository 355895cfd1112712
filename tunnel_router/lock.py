"""Single-instance lock shared between runner processes.

The lock is an exclusive ``flock`` on ``runner.lock``; the file only carries
the holder's PID for humans and logs. The kernel drops the lock when its
holder dies, so a lock file left behind by a crashed runner is reclaimed by
simply locking it again.
"""

import atexit
import contextlib
import fcntl
import logging
import os
import time
from pathlib import Path
from typing import Callable, Optional

LOGGER = logging.getLogger("tunnel_router.lock")


class InstanceLock:
    def __init__(self, path: Path, poll_interval: float = 30.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.path = Path(path)
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._fd: Optional[int] = None
        self._pid = os.getpid()

    def read_owner(self) -> Optional[int]:
        try:
            raw = self.path.read_text().strip()
            return int(raw) if raw else None
        except (OSError, ValueError):
            return None

    def _try_lock(self) -> Optional[int]:
        fd = os.open(str(self.path), os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None
        if not self._is_current(fd):
            # released and unlinked by its holder after we opened it
            os.close(fd)
            return None
        return fd

    def _is_current(self, fd: int) -> bool:
        try:
            on_disk = os.stat(str(self.path))
        except FileNotFoundError:
            return False
        held = os.fstat(fd)
        return (on_disk.st_dev, on_disk.st_ino) == (held.st_dev, held.st_ino)

    def acquire(self) -> None:
        """Block until the lock is ours, polling every ``poll_interval`` seconds."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        waited = False
        while True:
            fd = self._try_lock()
            if fd is not None:
                break
            if not self.path.exists():
                continue
            if not waited:
                LOGGER.info("another runner is active (pid=%s); waiting", self.read_owner())
                waited = True
            self._sleep(self.poll_interval)
        previous = self.read_owner()
        if previous is not None and previous != self._pid:
            LOGGER.info("reclaimed lock left by pid=%s", previous)
        if waited:
            LOGGER.info("previous runner exited; continuing")
        os.ftruncate(fd, 0)
        os.write(fd, f"{self._pid}\n".encode("ascii"))
        self._fd = fd
        atexit.register(self.release)

    def release(self) -> None:
        fd = self._fd
        if fd is None:
            return
        self._fd = None
        with contextlib.suppress(Exception):
            atexit.unregister(self.release)
        # unlink while still locked so a waiter never locks a dead inode
        if self._is_current(fd):
            with contextlib.suppress(FileNotFoundError):
                self.path.unlink()
        os.close(fd)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def __enter__(self) -> "InstanceLock":
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
