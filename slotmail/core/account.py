"""
slotmail Account

Local identity: the long-term RSA key, the mailsite key body peers use to
find us, and the KSK our RTS messages arrive under.
"""

import secrets
import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives.asymmetric import rsa

from ..utils.encoding import b32encode
from .crypto import PublicKey, generate_private_key, load_private_key, save_private_key

logger = logging.getLogger(__name__)

CONTACTS_DIR = "contacts"
OUTBOUND_DIR = "outbound"
INBOUND_DIR = "inbound"
INBOX_DIR = "inbox"


def check_key_body(key_body: str) -> str:
    """Key bodies name contact directories, so they must be plain file names."""
    if not key_body or "/" in key_body or key_body in (".", "..") or "\x00" in key_body:
        raise ValueError(f"Invalid mailsite key: {key_body!r}")
    return key_body


@dataclass
class Account:
    """A local mail account."""
    data_dir: Path
    private_key: rsa.RSAPrivateKey
    mailsite_key: str
    rtsksk: str

    def __post_init__(self):
        self.data_dir = Path(self.data_dir)
        check_key_body(self.mailsite_key)

    @property
    def public_key(self) -> PublicKey:
        return PublicKey.from_private(self.private_key)

    @property
    def outbound_dir(self) -> Path:
        return self.data_dir / CONTACTS_DIR / OUTBOUND_DIR

    @property
    def inbound_dir(self) -> Path:
        return self.data_dir / CONTACTS_DIR / INBOUND_DIR

    @property
    def inbox_dir(self) -> Path:
        return self.data_dir / INBOX_DIR

    @classmethod
    def load(cls, config) -> "Account":
        """Load the account described by an AccountConfig section."""
        data_dir = Path(config.data_dir).expanduser()
        key_path = Path(config.private_key_file)
        if not key_path.is_absolute():
            key_path = data_dir / key_path
        return cls(
            data_dir=data_dir,
            private_key=load_private_key(key_path),
            mailsite_key=config.mailsite_key,
            rtsksk=config.rtsksk,
        )

    @classmethod
    def create(
        cls,
        data_dir: Path,
        mailsite_key: str,
        key_file: str = "account.pem",
        key_size: int = 2048
    ) -> "Account":
        """Create a new account with a fresh key and a random RTS KSK."""
        private_key = generate_private_key(key_size)
        save_private_key(private_key, Path(data_dir) / key_file)
        account = cls(
            data_dir=Path(data_dir),
            private_key=private_key,
            mailsite_key=mailsite_key,
            rtsksk=b32encode(secrets.token_bytes(16)),
        )
        logger.info(f"Created account {mailsite_key} in {data_dir}")
        return account
