"""
slotmail RTS Receiver

Peer side of the handshake. Polls the recent RTS keys of the local account,
opens each RTS, and for a valid one sets up the inbound contact and
publishes the CTS the sender is waiting for.
"""

import time
import logging
from typing import Callable, Optional, TYPE_CHECKING

from ..network.base import StorageClient, InsertError
from ..protocol.envelope import (
    EnvelopeError,
    RTSPayload,
    date_key_string,
    format_headers,
    rts_base_key,
)
from ..store.contacts import InboundStore, PROPSFILE_NAME
from ..store.models import InboundState
from ..store.propsfile import PropsFile
from .account import check_key_body
from .crypto import ChainedBlockCipher, CryptoError, verify
from .mailsite import MailsiteError, fetch_mailsite
from .outbound import CTS_SUFFIX

if TYPE_CHECKING:
    from .account import Account

logger = logging.getLogger(__name__)

RTS_DIR = "rts"
MESSAGETYPE_CTS = "cts"
DAY_SECONDS = 24 * 60 * 60


def _parse_indices(value: Optional[str]) -> list[int]:
    indices = []
    for part in (value or "").split(","):
        try:
            indices.append(int(part))
        except ValueError:
            continue
    return indices


def _format_indices(indices: list[int]) -> Optional[str]:
    if not indices:
        return None
    return ",".join(str(i) for i in indices)


class RTSReceiver:
    """Handles RTS messages addressed to the local account."""

    def __init__(
        self,
        account: "Account",
        client: StorageClient,
        clock: Callable[[], float] = time.time
    ):
        self.account = account
        self.client = client
        self.clock = clock
        self.props = PropsFile(account.data_dir / RTS_DIR / PROPSFILE_NAME)

    def poll(self) -> int:
        """
        Process every new RTS inserted yesterday or today.

        Yesterday is included so an RTS inserted just before midnight is
        still seen. An RTS that cannot be handled yet is remembered and
        retried on later polls without holding up the ones after it.

        Returns:
            Number of valid RTS messages accepted
        """
        now = self.clock()
        keep = set()
        accepted = 0

        for timestamp in (now - DAY_SECONDS, now):
            date = date_key_string(timestamp)
            keep.update({f"{date}.last", f"{date}.retry"})
            accepted += self._poll_day(date, rts_base_key(self.account.rtsksk, timestamp))

        # Forget earlier days, their keys are never polled again
        stale = {key: None for key in self.props.as_dict() if key not in keep}
        if stale:
            self.props.update(stale)

        return accepted

    def _poll_day(self, date: str, base_key: str) -> int:
        last_key = f"{date}.last"
        retry_key = f"{date}.retry"
        retry = _parse_indices(self.props.get(retry_key))
        waiting = []
        accepted = 0

        for index in retry:
            data = self.client.fetch(f"{base_key}-{index}")
            result = self._process(data) if data is not None else None
            if result is None:
                waiting.append(index)
            elif result:
                accepted += 1
        if waiting != retry:
            self.props.put(retry_key, _format_indices(waiting))

        try:
            index = int(self.props.get(last_key) or 0) + 1
        except ValueError:
            index = 1

        while True:
            data = self.client.fetch(f"{base_key}-{index}")
            if data is None:
                break

            result = self._process(data)
            if result is None:
                logger.info(f"RTS {date}-{index} cannot be handled yet, will retry")
                waiting.append(index)
            elif result:
                accepted += 1

            if not self.props.update({last_key: index, retry_key: _format_indices(waiting)}):
                break
            index += 1

        return accepted

    def _process(self, data: bytes):
        """
        Handle one RTS.

        Returns:
            True if accepted, False if rejected, None to retry later
        """
        try:
            plaintext = ChainedBlockCipher.decrypt(self.account.private_key, data)
        except CryptoError as e:
            logger.warning(f"Could not decrypt RTS: {e}")
            return False

        try:
            rts, signed, signature = RTSPayload.from_bytes(plaintext)
        except EnvelopeError as e:
            logger.warning(f"Discarding malformed RTS: {e}")
            return False

        if rts.to != self.account.mailsite_key:
            logger.warning(f"Discarding RTS addressed to {rts.to}, not to us")
            return False

        try:
            sender = check_key_body(rts.mailsite)
        except ValueError as e:
            logger.warning(f"Discarding RTS with bad sender: {e}")
            return False

        try:
            mailsite = fetch_mailsite(self.client, sender)
        except MailsiteError as e:
            logger.error(f"Discarding RTS from {sender}, their mailsite is unusable: {e}")
            return False
        if mailsite is None:
            return None

        if not verify(mailsite.public_key, signed, signature):
            logger.warning(f"RTS from {sender} has a bad signature - discarding")
            return False

        store = InboundStore(self.account.inbound_dir / sender)
        current = store.load()
        if current.commssk != rts.commssk or not current.slots:
            # New session; a repeated RTS keeps the watermark already reached
            state = InboundState(slots=rts.initialslot, commssk=rts.commssk, ackssk=rts.ackssk)
            if not store.save(state):
                logger.error(f"Could not create inbound contact for {sender}")
                return None
            logger.info(f"Set up inbound contact for {sender}")

        cts = format_headers([("messagetype", MESSAGETYPE_CTS)])
        try:
            self.client.put(cts, rts.ackssk + CTS_SUFFIX)
        except InsertError as e:
            logger.info(f"Failed to insert CTS for {sender}, will try again: {e}")
            return None

        logger.info(f"Accepted RTS from {sender}")
        return True
