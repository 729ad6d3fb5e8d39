"""
slotmail Data Models

Typed records for the per-contact state kept in property files.
"""

from dataclasses import dataclass
from typing import Optional
from enum import Enum


class HandshakeState(Enum):
    """Outbound handshake state, stored as the contact's 'status' property."""
    UNSENT = "notsent"
    RTS_SENT = "rts-sent"
    CTS_RECEIVED = "cts-received"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HandshakeState":
        """Map a stored status to a state. Missing or unknown values mean UNSENT."""
        if value == cls.RTS_SENT.value:
            return cls.RTS_SENT
        if value == cls.CTS_RECEIVED.value:
            return cls.CTS_RECEIVED
        return cls.UNSENT


@dataclass
class OutboundState:
    """My view of sending to a peer."""
    status: HandshakeState = HandshakeState.UNSENT
    rts_sent_at: Optional[int] = None  # ms since epoch

    # Ephemeral key pairs created for this contact
    commssk_pubkey: Optional[str] = None
    commssk_privkey: Optional[str] = None
    ackssk_pubkey: Optional[str] = None
    ackssk_privkey: Optional[str] = None

    # Cached from the peer's mailsite
    rtsksk: Optional[str] = None
    asymkey_modulus: Optional[int] = None
    asymkey_pubexponent: Optional[int] = None

    initial_slot: Optional[str] = None
    next_slot: Optional[str] = None
    next_uid: int = 1

    attention: Optional[str] = None

    @property
    def has_comm_keys(self) -> bool:
        return bool(self.commssk_pubkey and self.commssk_privkey)

    @property
    def has_ack_keys(self) -> bool:
        return bool(self.ackssk_pubkey and self.ackssk_privkey)

    @property
    def has_peer_key(self) -> bool:
        return self.asymkey_modulus is not None and self.asymkey_pubexponent is not None


@dataclass
class InboundState:
    """My view of receiving from a peer."""
    slots: Optional[str] = None    # slot watermark
    commssk: Optional[str] = None  # peer's communication key (request side)
    ackssk: Optional[str] = None   # peer's ack key (insert side)


@dataclass
class QueuedMessage:
    """Outbound message awaiting acknowledgement."""
    uid: int
    slot: str
    first_send_time: Optional[int] = None  # ms since epoch
    last_send_time: Optional[int] = None
