"""
slotmail Events

Status changes are published on pypubsub topics so that a UI, a metrics
collector or a bounce handler can follow contacts without polling their
files. Listeners run synchronously in the publishing thread.

Topics (all under "slotmail."):
    contact.fatal(contact, error)       contact needs attention
    contact.corrupt(contact, detail)    required state missing
    handshake.rts_sent(contact)
    handshake.confirmed(contact)
    message.sent(contact, uid)
    message.acked(contact, uid)
    message.abandoned(contact, uid)     undeliverable; bounce it
    message.received(contact, msg_id)
"""

import logging

from pubsub import pub

logger = logging.getLogger(__name__)

CONTACT_FATAL = "slotmail.contact.fatal"
CONTACT_CORRUPT = "slotmail.contact.corrupt"
RTS_SENT = "slotmail.handshake.rts_sent"
HANDSHAKE_CONFIRMED = "slotmail.handshake.confirmed"
MESSAGE_SENT = "slotmail.message.sent"
MESSAGE_ACKED = "slotmail.message.acked"
MESSAGE_ABANDONED = "slotmail.message.abandoned"
MESSAGE_RECEIVED = "slotmail.message.received"


# Prototype listeners fix each topic's message data
def _contact_error(contact, error):
    """- contact: mailsite key of the contact
    - error: reason the contact needs attention"""


def _contact_detail(contact, detail):
    """- contact: mailsite key of the contact
    - detail: which state is missing"""


def _contact_only(contact):
    """- contact: mailsite key of the contact"""


def _contact_uid(contact, uid):
    """- contact: mailsite key of the contact
    - uid: outbound message uid"""


def _contact_msg_id(contact, msg_id):
    """- contact: mailsite key of the contact
    - msg_id: id header of the received message"""


_TOPICS = {
    CONTACT_FATAL: _contact_error,
    CONTACT_CORRUPT: _contact_detail,
    RTS_SENT: _contact_only,
    HANDSHAKE_CONFIRMED: _contact_only,
    MESSAGE_SENT: _contact_uid,
    MESSAGE_ACKED: _contact_uid,
    MESSAGE_ABANDONED: _contact_uid,
    MESSAGE_RECEIVED: _contact_msg_id,
}


def define_topics():
    """Create all topics with their listener prototypes."""
    manager = pub.getDefaultTopicMgr()
    for name, proto in _TOPICS.items():
        manager.getOrCreateTopic(name, proto)


define_topics()


def _send(topic: str, **data):
    try:
        pub.sendMessage(topic, **data)
    except Exception as e:
        # Listener failures are logged, never propagated
        logger.error(f"Listener for {topic} failed: {e}")


def contact_fatal(contact: str, error: str):
    _send(CONTACT_FATAL, contact=contact, error=error)


def contact_corrupt(contact: str, detail: str):
    _send(CONTACT_CORRUPT, contact=contact, detail=detail)


def rts_sent(contact: str):
    _send(RTS_SENT, contact=contact)


def handshake_confirmed(contact: str):
    _send(HANDSHAKE_CONFIRMED, contact=contact)


def message_sent(contact: str, uid: int):
    _send(MESSAGE_SENT, contact=contact, uid=uid)


def message_acked(contact: str, uid: int):
    _send(MESSAGE_ACKED, contact=contact, uid=uid)


def message_abandoned(contact: str, uid: int):
    _send(MESSAGE_ABANDONED, contact=contact, uid=uid)


def message_received(contact: str, msg_id: int):
    _send(MESSAGE_RECEIVED, contact=contact, msg_id=msg_id)
