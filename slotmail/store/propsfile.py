"""
slotmail Property File

Flat key=value file used as the durable store for contact state.
Every write replaces the whole file atomically, so a crash leaves either
the old or the new contents on disk, never a mix.
"""

import os
import logging
import tempfile
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger(__name__)


class PropsFile:
    """
    Property file read fresh on every access.

    Contact files are small and may be shared between the driver and the
    CLI, so nothing is cached between calls.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def _load(self) -> dict[str, str]:
        data = {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    line = line.rstrip("\r\n")
                    if not line or "=" not in line:
                        continue
                    key, _, value = line.partition("=")
                    data[key] = value
        except FileNotFoundError:
            pass
        return data

    def _write(self, data: dict[str, str]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".props-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                for key, value in data.items():
                    f.write(f"{key}={value}\n")
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    def get(self, key: str) -> Optional[str]:
        """Get a property value, or None if it is not set."""
        return self._load().get(key)

    def put(self, key: str, value) -> bool:
        """Set a single property."""
        return self.update({key: value})

    def remove(self, key: str) -> bool:
        """Remove a property. Removing a missing property is not an error."""
        return self.update({key: None})

    def update(self, values: Mapping[str, object]) -> bool:
        """
        Apply several changes in one atomic write.

        Keys mapped to None are removed.

        Returns:
            True if the changes are on disk
        """
        current = self._load()
        data = dict(current)

        for key, value in values.items():
            if not key or "=" in key or "\n" in key:
                raise ValueError(f"Invalid property name: {key!r}")
            if value is None:
                data.pop(key, None)
                continue
            value = str(value)
            if "\n" in value or "\r" in value:
                raise ValueError(f"Property {key} cannot contain line breaks")
            data[key] = value

        if data == current:
            return True

        try:
            self._write(data)
        except OSError as e:
            logger.error(f"Failed to write {self.path}: {e}")
            return False
        return True

    def as_dict(self) -> dict[str, str]:
        """Return a snapshot of all properties."""
        return self._load()
