"""
slotmail Storage Client Interface

Abstract interface to the distributed storage network. All calls block;
timeouts and transport retries belong to the implementation.

Keys are opaque strings. Key pairs follow insert/request semantics: data
put under private_key + suffix is fetched from public_key + suffix.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# How many collision-avoidance indices insert() tries before giving up
MAX_INSERT_SLOTS = 100


def key_pair_prefix(key: str) -> Optional[str]:
    """Return the 'SSK@.../' part of a key-pair key, else None."""
    if not key.startswith("SSK@"):
        return None
    head, sep, _ = key.partition("/")
    if not sep:
        return None
    return head + sep


class StorageError(Exception):
    """Transient storage network failure."""
    pass


class InsertError(StorageError):
    """Insert failed. collision is set when the key already holds other data."""

    def __init__(self, message: str, collision: bool = False):
        super().__init__(message)
        self.collision = collision


@dataclass(frozen=True)
class KeyPair:
    """Asymmetric storage key pair."""
    public_key: str
    private_key: str


class StorageClient(ABC):
    """
    Storage network client.

    Implementations:
    - LoopbackStorage: in-process, for tests and single-process setups
    - SpoolStorage: shared directory, for accounts on one machine
    """

    @abstractmethod
    def fetch(self, key: str) -> Optional[bytes]:
        """Fetch data stored under key, or None if absent or unreachable."""
        pass

    @abstractmethod
    def put(self, data: bytes, key: str):
        """
        Store data under exactly this key.

        Raises:
            InsertError: If the insert fails
        """
        pass

    @abstractmethod
    def generate_key_pair(self) -> KeyPair:
        """
        Create a new key pair.

        Raises:
            StorageError: If the network cannot provide one
        """
        pass

    def insert(self, data: bytes, key: str, priority: int = 1, extra: str = "") -> int:
        """
        Insert at the first free '<key>-<n><extra>' with n counting up from priority.

        Used for public keys that several senders may write to.

        Returns:
            The index used, or -1 on failure
        """
        for index in range(priority, priority + MAX_INSERT_SLOTS):
            target = f"{key}-{index}{extra}"
            try:
                self.put(data, target)
                return index
            except InsertError as e:
                if e.collision:
                    continue
                logger.warning(f"Insert to {target} failed: {e}")
                return -1

        logger.warning(f"No free slot under {key}")
        return -1
