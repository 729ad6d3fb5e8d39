"""slotmail Store Module - Per-contact durable state."""

from .propsfile import PropsFile
from .models import HandshakeState, OutboundState, InboundState, QueuedMessage
from .contacts import OutboundStore, Outbox, InboundStore, MessageLog
from .lock import ContactLock, ContactBusyError

__all__ = [
    "PropsFile",
    "HandshakeState",
    "OutboundState",
    "InboundState",
    "QueuedMessage",
    "OutboundStore",
    "Outbox",
    "InboundStore",
    "MessageLog",
    "ContactLock",
    "ContactBusyError",
]
