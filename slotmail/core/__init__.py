"""slotmail Core Module - Account, contacts, RTS handling and the driver."""

from .account import Account
from .mailsite import Mailsite, MailsiteError, fetch_mailsite, publish_mailsite
from .messagebank import MessageBank
from .outbound import OutboundContact
from .inbound import InboundContact
from .rts import RTSReceiver
from .driver import ContactDriver

__all__ = [
    "Account",
    "Mailsite",
    "MailsiteError",
    "fetch_mailsite",
    "publish_mailsite",
    "MessageBank",
    "OutboundContact",
    "InboundContact",
    "RTSReceiver",
    "ContactDriver",
]
