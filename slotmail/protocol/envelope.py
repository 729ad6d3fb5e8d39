"""
slotmail Envelope Formats

Header blocks are key=value lines terminated by CRLF, with a blank line
closing the block:

    id=42\r\n
    \r\n
    <body>

Messages carry only the 'id' header and travel in plaintext; their secrecy
comes from the insertion key. The RTS is a header block followed by a
signature, encrypted as a whole by core.crypto.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

CRLF = "\r\n"

MESSAGETYPE_RTS = "rts"

# RTS fields, in wire order
RTS_FIELDS = ("commssk", "ackssk", "initialslot", "messagetype", "to", "mailsite")


class EnvelopeError(ValueError):
    """Malformed header block or payload."""
    pass


def format_headers(fields: list[tuple[str, str]]) -> bytes:
    """Build a header block, including the closing blank line."""
    lines = []
    for key, value in fields:
        value = str(value)
        if "\r" in value or "\n" in value or "=" in key:
            raise EnvelopeError(f"Header {key} cannot be encoded")
        lines.append(f"{key}={value}{CRLF}")
    lines.append(CRLF)
    return "".join(lines).encode("utf-8")


def parse_headers(data: bytes) -> tuple[dict[str, str], bytes]:
    """
    Split a payload into its header block and body.

    Lines without '=' are ignored. A payload with no blank line is all
    header and has an empty body.

    Raises:
        EnvelopeError: If the header block is not valid UTF-8
    """
    headers = {}
    pos = 0

    while pos < len(data):
        end = data.find(b"\n", pos)
        if end < 0:
            line, pos = data[pos:], len(data)
        else:
            line, pos = data[pos:end], end + 1

        line = line.rstrip(b"\r")
        if not line:
            return headers, data[pos:]

        try:
            text = line.decode("utf-8")
        except UnicodeDecodeError as e:
            raise EnvelopeError(f"Undecodable header line: {e}") from e

        if "=" not in text:
            continue
        key, _, value = text.partition("=")
        headers[key] = value

    return headers, b""


def wrap_message(uid: int, body: bytes) -> bytes:
    """Prefix a message body with its id header."""
    return format_headers([("id", str(uid))]) + body


def parse_message_id(headers: dict[str, str]) -> Optional[int]:
    """Return the integer id header, or None if missing or not an integer."""
    value = headers.get("id")
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def date_key_string(timestamp: float) -> str:
    """UTC day stamp used to keep RTS keys from colliding across days."""
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def rts_base_key(rtsksk: str, timestamp: float) -> str:
    """Public KSK under which RTS messages for a mailsite are inserted."""
    return f"KSK@{rtsksk}-{date_key_string(timestamp)}"


@dataclass
class RTSPayload:
    """Handshake payload, in plaintext form."""
    commssk: str        # sender's comm key, request side
    ackssk: str         # sender's ack key, insert side
    initialslot: str
    to: str             # recipient mailsite key body
    mailsite: str       # sender mailsite key body
    messagetype: str = MESSAGETYPE_RTS

    def to_bytes(self) -> bytes:
        return format_headers([(name, getattr(self, name)) for name in RTS_FIELDS])

    @classmethod
    def from_bytes(cls, data: bytes) -> tuple["RTSPayload", bytes, bytes]:
        """
        Parse a decrypted RTS.

        Returns:
            (payload, signed_part, signature)

        Raises:
            EnvelopeError: If a field is missing or the type is wrong
        """
        headers, signature = parse_headers(data)
        signed = data[:len(data) - len(signature)]

        missing = [name for name in RTS_FIELDS if not headers.get(name)]
        if missing:
            raise EnvelopeError(f"RTS is missing fields: {', '.join(missing)}")
        if headers["messagetype"] != MESSAGETYPE_RTS:
            raise EnvelopeError(f"Not an RTS: messagetype={headers['messagetype']}")
        if not signature:
            raise EnvelopeError("RTS is not signed")

        payload = cls(**{name: headers[name] for name in RTS_FIELDS})
        return payload, signed, signature
