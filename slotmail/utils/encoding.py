"""
slotmail Token Encoding

Slots and seeds travel as lowercase, unpadded base32 strings so they can be
appended to storage keys.
"""

import base64
import binascii


def b32encode(data: bytes) -> str:
    """Encode bytes as lowercase base32 without padding."""
    return base64.b32encode(data).decode("ascii").rstrip("=").lower()


def b32decode(token: str) -> bytes:
    """
    Decode a token produced by b32encode().

    Raises:
        ValueError: If the token is not valid base32
    """
    token = token.strip().upper()
    padding = -len(token) % 8
    try:
        return base64.b32decode(token + "=" * padding)
    except binascii.Error as e:
        raise ValueError(f"Invalid base32 token: {e}") from e
