"""
slotmail Spool Storage

Storage network emulated by a directory that several local accounts share.
Each key maps to a file named by the SHA-256 of the key.
"""

import os
import hashlib
import secrets
import logging
import tempfile
from pathlib import Path
from typing import Optional

from ..store.propsfile import PropsFile
from ..utils.encoding import b32encode
from .base import StorageClient, KeyPair, StorageError, InsertError, key_pair_prefix

logger = logging.getLogger(__name__)

DATA_DIR = "data"
KEYS_FILE = "keypairs"


class SpoolStorage(StorageClient):
    """Directory-backed storage network."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data_dir = self.path / DATA_DIR
        self._keys = PropsFile(self.path / KEYS_FILE)

    def _file_for(self, key: str) -> Path:
        prefix = key_pair_prefix(key)
        if prefix:
            public = self._keys.get(prefix)
            if public:
                key = public + key[len(prefix):]
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self._data_dir / digest[:2] / digest

    def fetch(self, key: str) -> Optional[bytes]:
        try:
            return self._file_for(key).read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning(f"Spool read failed for {key}: {e}")
            return None

    def put(self, data: bytes, key: str):
        target = self._file_for(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(prefix=".put-", dir=target.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise InsertError(f"spool write failed: {e}") from e

        try:
            # link() refuses to replace, which gives insert-once semantics
            os.link(tmp, target)
        except FileExistsError:
            if target.read_bytes() != data:
                raise InsertError(f"{key} already holds other data", collision=True)
        except OSError as e:
            raise InsertError(f"spool write failed: {e}") from e
        finally:
            try:
                os.unlink(tmp)
            except OSError:
                pass

    def generate_key_pair(self) -> KeyPair:
        public = f"SSK@{b32encode(secrets.token_bytes(20))},pub/"
        private = f"SSK@{b32encode(secrets.token_bytes(20))},priv/"
        if not self._keys.put(private, public):
            raise StorageError("could not record key pair")
        return KeyPair(public_key=public, private_key=private)
