"""
slotmail Inbound Contact

My side of receiving mail from one peer. Each fetch scans the slot
watermark and the next poll_ahead slots; an occupied slot is processed,
de-duplicated against the message log and delivered to the message bank.
"""

import logging
from enum import Enum
from pathlib import Path

from ..network.base import StorageClient, InsertError
from ..protocol.envelope import EnvelopeError, parse_headers, parse_message_id
from ..protocol.policy import DEFAULT_POLL_AHEAD
from ..protocol.slots import candidates
from ..store.contacts import InboundStore, MessageLog
from . import events
from .account import check_key_body
from .messagebank import MessageBank

logger = logging.getLogger(__name__)


class Intake(Enum):
    """Outcome of processing one occupied slot."""
    STORED = "stored"          # delivered; slot consumed
    DISCARDED = "discarded"    # malformed or replayed; slot consumed
    DEFERRED = "deferred"      # local failure; slot left for the next scan


class InboundContact:
    """
    Inbound half of a contact, keyed by the peer's mailsite key body.

    Props: 'slots' (watermark), 'commssk' (peer's comm key, request side),
    'ackssk' (peer's ack key, insert side), 'pendinglog' (delivered id not
    yet in the log).
    """

    def __init__(
        self,
        inbound_dir: Path,
        mailsite_key: str,
        client: StorageClient,
        message_bank: MessageBank,
        poll_ahead: int = DEFAULT_POLL_AHEAD
    ):
        self.mailsite_key = check_key_body(mailsite_key)
        self.contact_dir = Path(inbound_dir) / mailsite_key
        self.client = client
        self.message_bank = message_bank
        self.poll_ahead = poll_ahead

        self.store = InboundStore(self.contact_dir)
        self.log = MessageLog(self.contact_dir)

    def fetch(self) -> int:
        """
        Scan for new messages.

        Returns:
            Number of messages delivered
        """
        state = self.store.load()

        if not state.slots:
            logger.error(f"Contact {self.mailsite_key} is corrupt - account has no slots")
            events.contact_corrupt(self.mailsite_key, "slots")
            return 0
        if not state.commssk:
            logger.error(f"Contact {self.mailsite_key} is corrupt - account has no commssk")
            events.contact_corrupt(self.mailsite_key, "commssk")
            return 0

        try:
            slots = candidates(state.slots, self.poll_ahead)
        except ValueError as e:
            logger.error(f"Contact {self.mailsite_key} has an unreadable slot: {e}")
            events.contact_corrupt(self.mailsite_key, "slots")
            return 0

        if not self._flush_pending_log():
            return 0

        delivered = 0
        for slot in slots:
            key = state.commssk + slot
            logger.debug(f"Attempting to fetch {key}")

            data = self.client.fetch(key)
            if data is None:
                logger.debug(f"No message at {key}")
                continue

            outcome = self._intake(data, state.ackssk)
            if outcome == Intake.DEFERRED:
                # Stop here so the watermark cannot pass the deferred slot
                break

            if outcome == Intake.STORED:
                delivered += 1
            if not self.store.save_slots(slot):
                logger.error(f"Could not record slot watermark for {self.mailsite_key}")
                break

        return delivered

    def _intake(self, data: bytes, ackssk) -> Intake:
        try:
            headers, body = parse_headers(data)
        except EnvelopeError as e:
            logger.error(f"Got a message with an unreadable header - discarding: {e}")
            return Intake.DISCARDED

        msg_id = parse_message_id(headers)
        if msg_id is None:
            logger.error("Got a message without a valid id - discarding")
            return Intake.DISCARDED

        try:
            duplicate = self.log.is_present(msg_id)
        except OSError as e:
            logger.error(f"Couldn't read log file for {self.mailsite_key}: {e}")
            return Intake.DEFERRED

        if duplicate:
            logger.info(f"Got a message, but we've already logged that message ID ({msg_id}) as received. Discarding.")
            self._send_ack(ackssk, msg_id)
            return Intake.DISCARDED

        try:
            self.message_bank.store(body)
        except OSError as e:
            logger.error(f"Couldn't store message {msg_id} from {self.mailsite_key}: {e}")
            return Intake.DEFERRED

        logger.info(f"Received message {msg_id} from {self.mailsite_key}")
        events.message_received(self.mailsite_key, msg_id)

        try:
            self.log.add(msg_id)
        except OSError as e:
            # Delivered already; the id must reach the log before this slot is consumed
            logger.error(f"Couldn't log message {msg_id} as received: {e}")
            if not self.store.save_pending_log(msg_id):
                logger.error(f"Message {msg_id} from {self.mailsite_key} may be delivered twice")
            return Intake.DEFERRED

        self._send_ack(ackssk, msg_id)
        return Intake.STORED

    def _flush_pending_log(self) -> bool:
        """Log a message that was delivered while the log was unwritable."""
        msg_id = self.store.pending_log()
        if msg_id is None:
            return True

        try:
            self.log.add(msg_id)
        except OSError as e:
            logger.error(f"Still can't log message {msg_id} for {self.mailsite_key}: {e}")
            return False

        logger.info(f"Logged delivered message {msg_id} for {self.mailsite_key}")
        return self.store.save_pending_log(None)

    def _send_ack(self, ackssk, msg_id: int) -> bool:
        """Insert the ack for a message. Failures only delay the sender."""
        if not ackssk:
            logger.warning(f"Contact {self.mailsite_key} has no ack key, cannot ack message {msg_id}")
            return False
        try:
            self.client.put(b"", ackssk + str(msg_id))
        except InsertError as e:
            logger.info(f"Failed to insert ack for message {msg_id}: {e}")
            return False
        return True
