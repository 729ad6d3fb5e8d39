"""
slotmail Outbound Contact

My side of sending mail to one peer: the RTS/CTS handshake, the durable
send queue, and the ack/retransmit loop.

Per-cycle order (see ContactDriver):
    check_cts() -> send_queued() -> poll_acks()

Every decision is persisted before the next network call, so a crash can
cause a repeated insert or fetch but never loses a queued message.

run_cycle() and the queue-changing entry points hold the contact lock,
so a send from the CLI never interleaves with a driver cycle.
"""

import time
import logging
from pathlib import Path
from typing import Callable, Optional, TYPE_CHECKING

from ..network.base import StorageClient, StorageError, InsertError
from ..protocol import handshake
from ..protocol.envelope import RTSPayload, rts_base_key, wrap_message
from ..protocol.handshake import CTSStep, CorruptStateError
from ..protocol.policy import RetryPolicy
from ..protocol.results import CommResult
from ..protocol.retry import (
    AckDecision,
    awaiting_ack,
    decide_ack,
    mark_retransmit,
    mark_sent,
    needs_insert,
)
from ..protocol.slots import new_seed
from ..store.contacts import OutboundStore, Outbox
from ..store.lock import ContactBusyError, ContactLock
from ..store.models import HandshakeState, OutboundState, QueuedMessage
from . import events
from .account import check_key_body
from .crypto import ChainedBlockCipher, CryptoError, PublicKey, sign
from .mailsite import MailsiteError, fetch_mailsite

if TYPE_CHECKING:
    from .account import Account

logger = logging.getLogger(__name__)

CTS_SUFFIX = "ack"

# Seconds the CLI waits for a running cycle to release the contact
LOCK_WAIT = 60


class OutboundContact:
    """
    Outbound half of a contact, keyed by the peer's mailsite key body.

    Owns <outbound_dir>/<mailsite_key>/. check_cts, init, send_queued,
    poll_acks and do_comm expect the caller to hold the contact lock;
    run_cycle takes it itself.
    """

    def __init__(
        self,
        outbound_dir: Path,
        mailsite_key: str,
        account: "Account",
        client: StorageClient,
        policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Args:
            outbound_dir: Directory holding all outbound contacts
            mailsite_key: Peer's mailsite key body
            account: Local account (signing key, own mailsite)
            client: Storage network client
            policy: Protocol timers
            clock: Time source in seconds, replaceable in tests
        """
        self.mailsite_key = check_key_body(mailsite_key)
        self.contact_dir = Path(outbound_dir) / mailsite_key
        self.account = account
        self.client = client
        self.policy = policy or RetryPolicy()
        self.clock = clock

        self.contact_dir.mkdir(parents=True, exist_ok=True)
        self.store = OutboundStore(self.contact_dir)
        self.outbox = Outbox(self.contact_dir)
        self.lock = ContactLock(self.contact_dir)

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    def _save(self, state: OutboundState) -> bool:
        if not self.store.save(state):
            logger.error(f"Could not save state for {self.mailsite_key}")
            return False
        return True

    @property
    def state(self) -> OutboundState:
        """Current persisted state (read-only snapshot)."""
        return self.store.load()

    def ready(self) -> bool:
        """Whether messages may be inserted for this contact."""
        if not self.store.exists():
            return False
        return handshake.is_ready(self.store.load())

    # === Attention marking ===

    @property
    def attention(self) -> Optional[str]:
        return self.store.load().attention

    def _set_attention(self, reason: Optional[str]) -> bool:
        state = self.store.load()
        state.attention = reason
        return self._save(state)

    def mark_attention(self, reason: str, wait: float = LOCK_WAIT) -> bool:
        try:
            with self.lock.hold(wait):
                return self._set_attention(reason)
        except ContactBusyError as e:
            logger.warning(f"Could not mark {self.mailsite_key}: {e}")
            return False

    def clear_attention(self, wait: float = LOCK_WAIT) -> bool:
        try:
            with self.lock.hold(wait):
                return self._set_attention(None)
        except ContactBusyError as e:
            logger.warning(f"Could not clear mark on {self.mailsite_key}: {e}")
            return False

    # === Handshake ===

    def check_cts(self) -> CommResult:
        """
        Drive the handshake one step.

        Sends an RTS if none is outstanding, polls for the CTS if one is,
        and re-sends the RTS once the CTS wait window has passed.
        """
        state = self.store.load()
        step = handshake.next_cts_step(state)

        if step == CTSStep.DONE:
            return CommResult.ok()
        if step == CTSStep.INIT:
            return self.init()

        cts = self.client.fetch(state.ackssk_pubkey + CTS_SUFFIX)

        if cts is None:
            if handshake.cts_overdue(state, self._now_ms(), self.policy):
                logger.info(f"No CTS from {self.mailsite_key} yet, sending another RTS")
                return self.init()
            return CommResult.ok()

        logger.info(f"Successfully received CTS for {self.mailsite_key}")
        handshake.confirm(state)
        self._save(state)
        events.handshake_confirmed(self.mailsite_key)
        return CommResult.ok()

    def init(self) -> CommResult:
        """
        Set up the contact and insert an RTS.

        Generates keys and the slot seed if missing (reusing them otherwise),
        fetches the peer's mailsite if it is not cached, then signs, encrypts
        and inserts the RTS. Blocks on network I/O.
        """
        state = self.store.load()

        try:
            if not state.has_comm_keys:
                keys = self.client.generate_key_pair()
                handshake.reset_keys(state, keys.public_key, keys.private_key)
                if not self._save(state):
                    return CommResult.retry("could not save communication keys")

            if not state.has_ack_keys:
                keys = self.client.generate_key_pair()
                state.ackssk_pubkey = keys.public_key
                state.ackssk_privkey = keys.private_key
                if not self._save(state):
                    return CommResult.retry("could not save ack keys")
        except StorageError as e:
            logger.warning(f"Key generation failed for {self.mailsite_key}: {e}")
            return CommResult.retry(f"key generation failed: {e}")

        if not state.has_peer_key or not state.rtsksk:
            try:
                mailsite = fetch_mailsite(self.client, self.mailsite_key)
            except MailsiteError as e:
                return CommResult.failed(f"Mailsite for {self.mailsite_key}: {e}")
            if mailsite is None:
                return CommResult.retry("mailsite not retrievable yet")

            state.rtsksk = mailsite.rtsksk
            state.asymkey_modulus = mailsite.public_key.modulus
            state.asymkey_pubexponent = mailsite.public_key.exponent
            if not self._save(state):
                return CommResult.retry("could not save mailsite details")

        if state.initial_slot is None:
            state.initial_slot = new_seed()
            state.next_slot = None
            if not self._save(state):
                return CommResult.retry("could not save initial slot")

        rts = RTSPayload(
            commssk=state.commssk_pubkey,
            ackssk=state.ackssk_privkey,
            initialslot=state.initial_slot,
            to=self.mailsite_key,
            mailsite=self.account.mailsite_key,
        )
        plaintext = rts.to_bytes()
        signed = plaintext + sign(self.account.private_key, plaintext)

        peer_key = PublicKey(modulus=state.asymkey_modulus, exponent=state.asymkey_pubexponent)
        try:
            ciphertext = ChainedBlockCipher.encrypt(peer_key, signed)
        except CryptoError as e:
            return CommResult.failed(f"Cannot encrypt to {self.mailsite_key}: {e}")

        base_key = rts_base_key(state.rtsksk, self.clock())
        if self.client.insert(ciphertext, base_key, self.policy.rts_priority) < 0:
            logger.info(f"RTS insert for {self.mailsite_key} failed, will try again")
            return CommResult.retry("RTS insert failed")

        handshake.mark_rts_sent(state, self._now_ms())
        if not self._save(state):
            return CommResult.retry("could not record RTS")

        logger.info(f"Sent RTS to {self.mailsite_key}")
        events.rts_sent(self.mailsite_key)
        return CommResult.ok()

    # === Sending ===

    def send_message(self, body: bytes, wait: float = LOCK_WAIT) -> bool:
        """
        Queue a message for delivery. No network I/O.

        Waits up to wait seconds for a running cycle to finish.

        Returns:
            True if the message is durably queued
        """
        try:
            with self.lock.hold(wait):
                return self._queue(body)
        except ContactBusyError:
            logger.warning(f"Contact {self.mailsite_key} is busy, message not queued")
            return False

    def _queue(self, body: bytes) -> bool:
        state = self.store.load()

        if state.next_slot is None and state.initial_slot is None:
            state.initial_slot = new_seed()

        uid = handshake.pop_next_uid(state)
        slot = handshake.pop_next_slot(state)
        if not self._save(state):
            return False

        msg = QueuedMessage(uid=uid, slot=slot)
        try:
            if not self.outbox.add(msg, wrap_message(uid, body)):
                return False
        except OSError as e:
            logger.error(f"IO error queueing message for {self.mailsite_key}: {e}. Will try again soon")
            return False

        logger.info(f"Queued message {uid} for {self.mailsite_key}")
        return True

    def pending(self) -> list[QueuedMessage]:
        """
        Messages still waiting for an ack.

        While another process holds the contact, the queue is only read;
        cleaning it could remove a payload whose record is being written.
        """
        if not self.lock.acquire():
            return self.outbox.pending(cleanup=False)
        try:
            return self.outbox.pending()
        finally:
            self.lock.release()

    def do_comm(self):
        """Insert what is due, then look for acks."""
        self.send_queued()
        self.poll_acks()

    def send_queued(self) -> int:
        """
        Insert every queued message that has not been inserted on its
        current slot. One attempt per message per call.

        Returns:
            Number of messages inserted
        """
        state = self.store.load()
        sent = 0

        for msg in self.outbox.pending():
            if not needs_insert(msg):
                continue

            if not state.commssk_privkey:
                logger.error(
                    f"Contact {self.mailsite_key} has no private communication key - "
                    f"contact directory appears corrupt"
                )
                events.contact_corrupt(self.mailsite_key, "commssk.privkey")
                continue

            try:
                payload = self.outbox.read_payload(msg.uid)
            except OSError as e:
                logger.warning(f"Cannot read queued message {msg.uid}: {e}")
                continue

            key = state.commssk_privkey + msg.slot
            logger.debug(f"Inserting message to {key}")

            try:
                self.client.put(payload, key)
            except InsertError as e:
                if e.collision:
                    # The slot holds something else; move on to a fresh one
                    try:
                        mark_retransmit(msg, handshake.pop_next_slot(state))
                    except CorruptStateError as ce:
                        logger.error(f"Contact {self.mailsite_key}: {ce}")
                        continue
                    self._save(state)
                    self.outbox.save(msg)
                logger.info(f"Failed to insert message {msg.uid}, will try again soon: {e}")
                continue

            mark_sent(msg, self._now_ms())
            self.outbox.save(msg)
            sent += 1
            logger.info(f"Successfully inserted message {msg.uid} for {self.mailsite_key}")
            events.message_sent(self.mailsite_key, msg.uid)

        return sent

    def poll_acks(self) -> int:
        """
        Look for acks of sent messages; retransmit or abandon the rest.

        Returns:
            Number of messages acknowledged
        """
        acked = 0

        for msg in self.outbox.pending():
            if not awaiting_ack(msg):
                continue

            state = self.store.load()
            if not state.ackssk_pubkey:
                logger.error(
                    f"Contact {self.mailsite_key} has no public ack key - "
                    f"contact directory appears corrupt"
                )
                events.contact_corrupt(self.mailsite_key, "ackssk.pubkey")
                continue

            ack = self.client.fetch(state.ackssk_pubkey + str(msg.uid))
            decision = decide_ack(msg, self._now_ms(), ack is not None, self.policy)

            if decision == AckDecision.CONFIRMED:
                if not self.outbox.remove(msg.uid):
                    continue
                acked += 1
                logger.info(f"Ack received for message {msg.uid} on contact {self.mailsite_key}")
                events.message_acked(self.mailsite_key, msg.uid)

                # An ack proves the peer has our RTS, so it counts as a CTS too
                if state.status != HandshakeState.CTS_RECEIVED or state.initial_slot is not None:
                    handshake.confirm(state)
                    self._save(state)
                    events.handshake_confirmed(self.mailsite_key)

            elif decision == AckDecision.ABANDON:
                logger.warning(f"Giving up on message {msg.uid} to {self.mailsite_key} - been trying for too long")
                if self.outbox.remove(msg.uid):
                    events.message_abandoned(self.mailsite_key, msg.uid)

            elif decision == AckDecision.RETRANSMIT:
                try:
                    slot = handshake.pop_next_slot(state)
                except CorruptStateError as e:
                    logger.error(f"Contact {self.mailsite_key}: {e}")
                    events.contact_corrupt(self.mailsite_key, "nextslot")
                    continue
                if not self._save(state):
                    continue
                mark_retransmit(msg, slot)
                self.outbox.save(msg)
                logger.info(f"No ack for message {msg.uid} yet, will resend on a new slot")

        return acked

    def run_cycle(self) -> CommResult:
        """
        One full cycle: handshake, then sending and acks if ready.

        Skipped with a retry result while another process holds the
        contact. A fatal result marks the contact for attention.
        """
        if not self.lock.acquire():
            logger.debug(f"Contact {self.mailsite_key} is locked, skipping cycle")
            return CommResult.retry("contact busy")

        try:
            result = self.check_cts()
            if result.fatal:
                self._set_attention(result.error)
                return result
            if self.ready():
                self.do_comm()
            return result
        finally:
            self.lock.release()
