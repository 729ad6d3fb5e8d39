"""
slotmail Contact Lock

Advisory lock on a contact directory. The driver and the CLI run in
separate processes and both write contact files, so every read-modify-write
of a contact happens under this lock.
"""

import os
import time
import fcntl
import logging
from pathlib import Path

logger = logging.getLogger(__name__)

LOCK_FILE = "lock"
POLL_INTERVAL = 0.1


class ContactBusyError(Exception):
    """The contact lock is held by someone else."""
    pass


class ContactLock:
    """
    Exclusive flock() on <contact>/lock.

    Not reentrant: two ContactLock objects on one directory exclude each
    other even inside one process.
    """

    def __init__(self, contact_dir: Path):
        self.path = Path(contact_dir) / LOCK_FILE
        self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self, timeout: float = 0) -> bool:
        """
        Take the lock, waiting up to timeout seconds.

        Returns:
            True if the lock is now held
        """
        if self._fd is not None:
            raise RuntimeError(f"{self.path} is already held by this object")

        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        deadline = time.monotonic() + timeout

        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                self._fd = fd
                return True
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    os.close(fd)
                    return False
                time.sleep(POLL_INTERVAL)
            except OSError:
                os.close(fd)
                raise

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    def hold(self, timeout: float = 0) -> "ContactLock":
        """
        Acquire for use in a with block.

        Raises:
            ContactBusyError: If the lock is not free within timeout
        """
        if not self.acquire(timeout):
            raise ContactBusyError(f"{self.path.parent.name} is busy")
        return self

    def __enter__(self) -> "ContactLock":
        if not self.held:
            self.hold()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False
