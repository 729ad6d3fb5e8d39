"""slotmail Network Module - Storage network clients."""

from .base import StorageClient, KeyPair, StorageError, InsertError
from .loopback import LoopbackStorage
from .spool import SpoolStorage

__all__ = [
    "StorageClient",
    "KeyPair",
    "StorageError",
    "InsertError",
    "LoopbackStorage",
    "SpoolStorage",
]
