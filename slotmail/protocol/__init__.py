"""slotmail Protocol Module - Pure state transitions and wire formats."""

from .slots import advance, new_seed, candidates
from .policy import RetryPolicy
from .results import CommResult
from .retry import AckDecision, decide_ack
from .envelope import EnvelopeError, RTSPayload

__all__ = [
    "advance",
    "new_seed",
    "candidates",
    "RetryPolicy",
    "CommResult",
    "AckDecision",
    "decide_ack",
    "EnvelopeError",
    "RTSPayload",
]
