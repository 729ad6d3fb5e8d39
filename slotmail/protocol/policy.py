"""
slotmail Retry Policy

Timer values for the handshake and the retransmission engine. The defaults
suit peers that come online roughly once a day; tests build policies with
compressed values.
"""

from dataclasses import dataclass

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS

# Slightly over a day, for peers that start up at about the same time daily
DEFAULT_CTS_WAIT_MS = 26 * HOUR_MS
DEFAULT_RETRANSMIT_DELAY_MS = 26 * HOUR_MS
DEFAULT_FAIL_DELAY_MS = 5 * DAY_MS

DEFAULT_POLL_AHEAD = 6
DEFAULT_RTS_PRIORITY = 1


@dataclass(frozen=True)
class RetryPolicy:
    """Protocol timers (milliseconds) and scan width."""
    cts_wait_ms: int = DEFAULT_CTS_WAIT_MS
    retransmit_delay_ms: int = DEFAULT_RETRANSMIT_DELAY_MS
    fail_delay_ms: int = DEFAULT_FAIL_DELAY_MS
    poll_ahead: int = DEFAULT_POLL_AHEAD
    rts_priority: int = DEFAULT_RTS_PRIORITY

    @classmethod
    def from_config(cls, config) -> "RetryPolicy":
        """Build a policy from a ProtocolConfig section."""
        return cls(
            cts_wait_ms=int(config.cts_wait_hours * HOUR_MS),
            retransmit_delay_ms=int(config.retransmit_delay_hours * HOUR_MS),
            fail_delay_ms=int(config.fail_delay_days * DAY_MS),
            poll_ahead=config.poll_ahead,
            rts_priority=config.rts_priority,
        )
