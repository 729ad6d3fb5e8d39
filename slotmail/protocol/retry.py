"""
slotmail Retransmission Decisions

Pure decisions of the outbound queue. A message is inserted once per slot;
if no ack arrives within the retransmit delay it moves to a fresh slot, and
after the fail delay it is abandoned.
"""

from enum import Enum

from ..store.models import QueuedMessage
from .policy import RetryPolicy


class AckDecision(Enum):
    CONFIRMED = "confirmed"
    ABANDON = "abandon"
    RETRANSMIT = "retransmit"
    WAIT = "wait"


def needs_insert(msg: QueuedMessage) -> bool:
    return msg.last_send_time is None


def awaiting_ack(msg: QueuedMessage) -> bool:
    return msg.first_send_time is not None


def decide_ack(
    msg: QueuedMessage,
    now_ms: int,
    ack_present: bool,
    policy: RetryPolicy
) -> AckDecision:
    """Decide what to do with a sent message after polling its ack key."""
    if ack_present:
        return AckDecision.CONFIRMED

    if now_ms > msg.first_send_time + policy.fail_delay_ms:
        return AckDecision.ABANDON

    # Already queued for re-insertion on a new slot
    if msg.last_send_time is None:
        return AckDecision.WAIT

    if now_ms > msg.last_send_time + policy.retransmit_delay_ms:
        return AckDecision.RETRANSMIT

    return AckDecision.WAIT


def mark_sent(msg: QueuedMessage, now_ms: int):
    """Stamp a successful insertion. The first send time is kept across retries."""
    if msg.first_send_time is None:
        msg.first_send_time = now_ms
    msg.last_send_time = now_ms


def mark_retransmit(msg: QueuedMessage, slot: str):
    """Move a message to a fresh slot and queue it for re-insertion."""
    msg.slot = slot
    msg.last_send_time = None
