"""
slotmail Message Bank

Local mailbox that received messages are delivered into. Each message is
one file, named by a sequence number, written atomically.
"""

import os
import logging
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)


class MessageBank:
    """Directory of delivered messages."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def _next_number(self) -> int:
        highest = 0
        if self.path.exists():
            for entry in self.path.iterdir():
                if entry.name.isdigit():
                    highest = max(highest, int(entry.name))
        return highest + 1

    def store(self, body: bytes) -> Path:
        """
        Deliver a message.

        Raises:
            OSError: If the message cannot be written
        """
        self.path.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".incoming-", dir=self.path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(body)
                f.flush()
                os.fsync(f.fileno())

            while True:
                target = self.path / str(self._next_number())
                try:
                    # link() fails rather than overwrite a concurrent delivery
                    os.link(tmp, target)
                    break
                except FileExistsError:
                    continue
        finally:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass

        logger.debug(f"Stored {len(body)} bytes as {target}")
        return target

    def messages(self) -> list[Path]:
        """Delivered messages, oldest first."""
        if not self.path.exists():
            return []
        return sorted(
            (entry for entry in self.path.iterdir() if entry.name.isdigit()),
            key=lambda entry: int(entry.name),
        )
