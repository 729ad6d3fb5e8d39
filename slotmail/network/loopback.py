"""
slotmail Loopback Storage

In-process storage network. Several clients may share one LoopbackStorage
to simulate parties talking through the network.
"""

import secrets
import logging
import threading
from typing import Optional

from ..utils.encoding import b32encode
from .base import StorageClient, KeyPair, StorageError, InsertError, key_pair_prefix

logger = logging.getLogger(__name__)


class LoopbackStorage(StorageClient):
    """
    Dictionary-backed storage network.

    Set online to False to make every operation fail as if the network
    were unreachable.
    """

    def __init__(self):
        self._data: dict[str, bytes] = {}
        self._private: dict[str, str] = {}  # private prefix -> public prefix
        self._lock = threading.Lock()
        self.online = True

        # Counters for tests and status output
        self.fetch_count = 0
        self.put_count = 0

    def _translate(self, key: str) -> str:
        prefix = key_pair_prefix(key)
        if prefix and prefix in self._private:
            return self._private[prefix] + key[len(prefix):]
        return key

    def fetch(self, key: str) -> Optional[bytes]:
        with self._lock:
            self.fetch_count += 1
            if not self.online:
                return None
            return self._data.get(key)

    def put(self, data: bytes, key: str):
        with self._lock:
            self.put_count += 1
            if not self.online:
                raise InsertError("network offline")

            target = self._translate(key)
            existing = self._data.get(target)
            if existing is not None:
                if existing == data:
                    return
                raise InsertError(f"{target} already holds other data", collision=True)

            self._data[target] = bytes(data)
            logger.debug(f"Stored {len(data)} bytes at {target}")

    def generate_key_pair(self) -> KeyPair:
        with self._lock:
            if not self.online:
                raise StorageError("network offline")

            public = f"SSK@{b32encode(secrets.token_bytes(20))},pub/"
            private = f"SSK@{b32encode(secrets.token_bytes(20))},priv/"
            self._private[private] = public
            return KeyPair(public_key=public, private_key=private)

    def keys(self) -> list[str]:
        """Every key currently holding data."""
        with self._lock:
            return list(self._data)
