"""
slotmail Mailsite

A mailsite is the document a user publishes so others can write to them.
It carries the long-term public key and the KSK for RTS messages.
"""

import logging
from dataclasses import dataclass
from typing import Optional, TYPE_CHECKING

from ..network.base import StorageClient, InsertError
from ..protocol.envelope import EnvelopeError, format_headers, parse_headers
from .crypto import PublicKey

if TYPE_CHECKING:
    from .account import Account

logger = logging.getLogger(__name__)

MAILSITE_SUFFIX = "mailsite"
MAILPAGE = "mailpage"


class MailsiteError(Exception):
    """
    The mailsite was retrieved but is unusable.

    Retrying cannot help until the owner republishes it.
    """
    pass


def mailpage_key(key_body: str) -> str:
    return f"USK@{key_body}/{MAILSITE_SUFFIX}/1/{MAILPAGE}"


@dataclass
class Mailsite:
    """Published mailsite document."""
    rtsksk: str
    public_key: PublicKey

    def to_bytes(self) -> bytes:
        return format_headers([
            ("rtsksk", self.rtsksk),
            ("asymkey.modulus", str(self.public_key.modulus)),
            ("asymkey.pubexponent", str(self.public_key.exponent)),
        ])

    @classmethod
    def from_bytes(cls, data: bytes) -> "Mailsite":
        """
        Raises:
            MailsiteError: If a required field is missing or malformed
        """
        try:
            headers, _ = parse_headers(data)
        except EnvelopeError as e:
            raise MailsiteError(f"Unreadable mailsite: {e}") from e

        rtsksk = headers.get("rtsksk")
        modulus = headers.get("asymkey.modulus")
        exponent = headers.get("asymkey.pubexponent")

        if not rtsksk or not modulus or not exponent:
            raise MailsiteError("Mailsite does not contain all necessary information")

        try:
            public_key = PublicKey(modulus=int(modulus), exponent=int(exponent))
        except ValueError as e:
            raise MailsiteError(f"Mailsite key is not numeric: {e}") from e

        return cls(rtsksk=rtsksk, public_key=public_key)


def fetch_mailsite(client: StorageClient, key_body: str) -> Optional[Mailsite]:
    """
    Retrieve a peer's mailsite.

    Returns:
        The mailsite, or None if it could not be retrieved (try later)

    Raises:
        MailsiteError: If it was retrieved but is unusable
    """
    key = mailpage_key(key_body)
    logger.info(f"Attempting to fetch {key}")

    data = client.fetch(key)
    if data is None:
        logger.info(f"Failed to retrieve mailsite for {key_body}")
        return None

    try:
        return Mailsite.from_bytes(data)
    except MailsiteError as e:
        logger.error(f"Mailsite for {key_body} is unusable: {e}")
        raise


def publish_mailsite(client: StorageClient, account: "Account") -> bool:
    """Insert the account's mailsite."""
    mailsite = Mailsite(rtsksk=account.rtsksk, public_key=account.public_key)
    try:
        client.put(mailsite.to_bytes(), mailpage_key(account.mailsite_key))
    except InsertError as e:
        logger.warning(f"Failed to publish mailsite: {e}")
        return False
    logger.info(f"Published mailsite for {account.mailsite_key}")
    return True
