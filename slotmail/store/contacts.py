"""
slotmail Contact Persistence

Load/save adapters between the typed contact records and the on-disk
layout:

    <contact>/props            contact properties
    <contact>/outbox/<uid>     queued payloads (outbound only)
    <contact>/outbox/_index    {uid}.slot, {uid}.first_send_time, {uid}.last_send_time
    <contact>/log              received message ids, one per line (inbound only)
    <contact>/lock             contact lock (outbound only, see store.lock)
"""

import os
import logging
import tempfile
from pathlib import Path
from typing import Optional

from .models import HandshakeState, OutboundState, InboundState, QueuedMessage
from .propsfile import PropsFile

logger = logging.getLogger(__name__)

PROPSFILE_NAME = "props"
OUTBOX_DIR = "outbox"
INDEX_FILE = "_index"
LOGFILE = "log"


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


def _to_time(value: Optional[str]) -> Optional[int]:
    """Timestamps below zero are the legacy marker for 'unset'."""
    ts = _to_int(value)
    if ts is None or ts < 0:
        return None
    return ts


class OutboundStore:
    """Property set of an outbound contact."""

    def __init__(self, contact_dir: Path):
        self.contact_dir = Path(contact_dir)
        self.props = PropsFile(self.contact_dir / PROPSFILE_NAME)

    def exists(self) -> bool:
        return self.props.exists()

    def load(self) -> OutboundState:
        p = self.props.as_dict()
        next_uid = _to_int(p.get("nextuid"))
        return OutboundState(
            status=HandshakeState.parse(p.get("status")),
            rts_sent_at=_to_time(p.get("rts-sent-at")),
            commssk_pubkey=p.get("commssk.pubkey"),
            commssk_privkey=p.get("commssk.privkey"),
            ackssk_pubkey=p.get("ackssk.pubkey"),
            ackssk_privkey=p.get("ackssk.privkey"),
            rtsksk=p.get("rtsksk"),
            asymkey_modulus=_to_int(p.get("asymkey.modulus")),
            asymkey_pubexponent=_to_int(p.get("asymkey.pubexponent")),
            initial_slot=p.get("initialslot"),
            next_slot=p.get("nextslot"),
            next_uid=next_uid if next_uid and next_uid > 0 else 1,
            attention=p.get("attention"),
        )

    def save(self, state: OutboundState) -> bool:
        """Write the whole record in one atomic update."""
        return self.props.update({
            "status": state.status.value,
            "rts-sent-at": state.rts_sent_at,
            "commssk.pubkey": state.commssk_pubkey,
            "commssk.privkey": state.commssk_privkey,
            "ackssk.pubkey": state.ackssk_pubkey,
            "ackssk.privkey": state.ackssk_privkey,
            "rtsksk": state.rtsksk,
            "asymkey.modulus": state.asymkey_modulus,
            "asymkey.pubexponent": state.asymkey_pubexponent,
            "initialslot": state.initial_slot,
            "nextslot": state.next_slot,
            "nextuid": state.next_uid,
            "attention": state.attention,
        })


class Outbox:
    """
    Durable send queue of an outbound contact.

    The index record is the source of truth for whether a uid is pending;
    payload files are written before their record and deleted after it.
    """

    def __init__(self, contact_dir: Path):
        self.path = Path(contact_dir) / OUTBOX_DIR
        self.index = PropsFile(self.path / INDEX_FILE)

    def _payload_path(self, uid: int) -> Path:
        return self.path / str(uid)

    def pending(self, cleanup: bool = True) -> list[QueuedMessage]:
        """
        Read all pending messages, ordered by uid.

        Spurious files and orphaned records are cleaned up on the way
        unless cleanup is False. Only the lock holder may clean up.
        """
        if not self.path.exists():
            return []

        index = self.index.as_dict()
        messages = []
        seen = set()

        for entry in sorted(self.path.iterdir()):
            if entry.name == INDEX_FILE or entry.name.startswith("."):
                continue

            try:
                uid = int(entry.name)
            except ValueError:
                if cleanup:
                    logger.warning(f"Found spurious file in send queue - deleting {entry}")
                    self._unlink(entry)
                continue

            slot = index.get(f"{uid}.slot")
            if slot is None:
                if cleanup:
                    logger.warning(f"Payload {uid} has no queue record - deleting")
                    self._unlink(entry)
                continue

            seen.add(uid)
            messages.append(QueuedMessage(
                uid=uid,
                slot=slot,
                first_send_time=_to_time(index.get(f"{uid}.first_send_time")),
                last_send_time=_to_time(index.get(f"{uid}.last_send_time")),
            ))

        orphans = {
            key.split(".", 1)[0] for key in index
            if _to_int(key.split(".", 1)[0]) not in seen
        }
        if orphans and cleanup:
            logger.warning(f"Dropping queue records without payload: {sorted(orphans)}")
            self.index.update({
                key: None for key in index if key.split(".", 1)[0] in orphans
            })

        messages.sort(key=lambda m: m.uid)
        return messages

    def add(self, msg: QueuedMessage, payload: bytes) -> bool:
        """
        Store a payload and its queue record.

        Raises:
            OSError: If the payload cannot be written
        """
        self.path.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".msg-", dir=self.path)
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._payload_path(msg.uid))
        except BaseException:
            self._unlink(Path(tmp))
            raise

        if not self.save(msg):
            self._unlink(self._payload_path(msg.uid))
            return False
        return True

    def save(self, msg: QueuedMessage) -> bool:
        """Persist a queue record."""
        return self.index.update({
            f"{msg.uid}.slot": msg.slot,
            f"{msg.uid}.first_send_time": msg.first_send_time,
            f"{msg.uid}.last_send_time": msg.last_send_time,
        })

    def read_payload(self, uid: int) -> bytes:
        """
        Read a queued payload.

        Raises:
            OSError: If the payload cannot be read
        """
        return self._payload_path(uid).read_bytes()

    def remove(self, uid: int) -> bool:
        """Remove a record, then its payload."""
        if not self.index.update({
            f"{uid}.slot": None,
            f"{uid}.first_send_time": None,
            f"{uid}.last_send_time": None,
        }):
            return False
        return self._unlink(self._payload_path(uid))

    @staticmethod
    def _unlink(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete {path}: {e}")
            return False
        return True


class InboundStore:
    """Property set of an inbound contact."""

    def __init__(self, contact_dir: Path):
        self.contact_dir = Path(contact_dir)
        self.props = PropsFile(self.contact_dir / PROPSFILE_NAME)

    def exists(self) -> bool:
        return self.props.exists()

    def load(self) -> InboundState:
        p = self.props.as_dict()
        return InboundState(
            slots=p.get("slots"),
            commssk=p.get("commssk"),
            ackssk=p.get("ackssk"),
        )

    def save(self, state: InboundState) -> bool:
        return self.props.update({
            "slots": state.slots,
            "commssk": state.commssk,
            "ackssk": state.ackssk,
        })

    def save_slots(self, slot: str) -> bool:
        """Move the slot watermark."""
        logger.debug(f"Putting {slot} into slots")
        return self.props.put("slots", slot)

    def pending_log(self) -> Optional[int]:
        """Id of a delivered message whose log entry is still missing."""
        return _to_int(self.props.get("pendinglog"))

    def save_pending_log(self, msg_id: Optional[int]) -> bool:
        return self.props.put("pendinglog", msg_id)


class MessageLog:
    """Append-only record of received message ids."""

    def __init__(self, contact_dir: Path):
        self.logfile = Path(contact_dir) / LOGFILE

    def is_present(self, msg_id: int) -> bool:
        """
        Check whether an id has been logged.

        Raises:
            OSError: If the log exists but cannot be read
        """
        try:
            f = open(self.logfile, "r", encoding="ascii")
        except FileNotFoundError:
            return False

        with f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    if int(line) == msg_id:
                        return True
                except ValueError:
                    logger.warning(f"Ignoring unreadable entry in {self.logfile}: {line!r}")
        return False

    def add(self, msg_id: int):
        """
        Append an id to the log.

        Raises:
            OSError: If the log cannot be written
        """
        self.logfile.parent.mkdir(parents=True, exist_ok=True)
        with open(self.logfile, "a", encoding="ascii") as f:
            f.write(f"{msg_id}\n")
            f.flush()
            os.fsync(f.fileno())
