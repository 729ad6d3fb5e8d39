"""
slotmail Handshake Transitions

Pure state changes of the outbound handshake:

    UNSENT -> RTS_SENT -> CTS_RECEIVED

Nothing here touches the network or the disk; OutboundContact performs the
I/O and persists the record after each call.
"""

from enum import Enum

from ..store.models import HandshakeState, OutboundState
from .policy import RetryPolicy
from .slots import advance


class CTSStep(Enum):
    """What check_cts() has to do next."""
    INIT = "init"    # run a fresh handshake
    POLL = "poll"    # look for the CTS
    DONE = "done"    # already confirmed


class CorruptStateError(Exception):
    """A required persisted field is missing."""
    pass


def next_cts_step(state: OutboundState) -> CTSStep:
    if state.status == HandshakeState.CTS_RECEIVED:
        return CTSStep.DONE
    if state.status == HandshakeState.RTS_SENT and state.ackssk_pubkey:
        return CTSStep.POLL
    return CTSStep.INIT


def cts_overdue(state: OutboundState, now_ms: int, policy: RetryPolicy) -> bool:
    """True once the CTS wait window since the RTS has elapsed."""
    if state.rts_sent_at is None:
        return True
    return now_ms > state.rts_sent_at + policy.cts_wait_ms


def is_ready(state: OutboundState) -> bool:
    """
    Whether messages may be inserted.

    Sending does not wait for the CTS; the retransmission engine covers a
    lost RTS.
    """
    return state.status in (HandshakeState.RTS_SENT, HandshakeState.CTS_RECEIVED)


def mark_rts_sent(state: OutboundState, now_ms: int):
    state.status = HandshakeState.RTS_SENT
    state.rts_sent_at = now_ms


def confirm(state: OutboundState):
    """
    Record the peer's confirmation and erase the seed.

    If no slot has been taken yet the seed itself is the next slot, so it
    moves into next_slot; only the initialslot property is dropped.
    """
    if state.next_slot is None:
        state.next_slot = state.initial_slot
    state.status = HandshakeState.CTS_RECEIVED
    state.initial_slot = None


def reset_keys(state: OutboundState, commssk_pubkey: str, commssk_privkey: str):
    """
    Install a new communication key pair.

    Once an RTS has gone out, the peer cannot know the new keys, so the
    handshake and the slot chain start over. Before that the seed is known
    to nobody and slots already given to queued messages stay valid.
    """
    state.commssk_pubkey = commssk_pubkey
    state.commssk_privkey = commssk_privkey
    if state.status == HandshakeState.UNSENT and state.rts_sent_at is None:
        return
    state.status = HandshakeState.UNSENT
    state.rts_sent_at = None
    state.initial_slot = None
    state.next_slot = None


def pop_next_slot(state: OutboundState) -> str:
    """
    Take the next unused slot and advance the watermark.

    Raises:
        CorruptStateError: If there is neither a watermark nor a seed
    """
    slot = state.next_slot or state.initial_slot
    if slot is None:
        raise CorruptStateError("no slot sequence recorded")
    state.next_slot = advance(slot)
    return slot


def pop_next_uid(state: OutboundState) -> int:
    uid = state.next_uid
    state.next_uid = uid + 1
    return uid
