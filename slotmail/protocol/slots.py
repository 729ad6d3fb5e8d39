"""
slotmail Slot Sequence

One-way chain of slot tokens: next = SHA-256(current). Both parties derive
the same chain from a shared seed; without the seed the tokens look random,
and holding a later slot reveals nothing about earlier ones.
"""

import hashlib
import secrets
from typing import Iterator

from ..utils.encoding import b32encode, b32decode

SEED_LENGTH = 32  # SHA-256 digest size


def new_seed() -> str:
    """Generate a random seed token."""
    return b32encode(secrets.token_bytes(SEED_LENGTH))


def advance(token: str) -> str:
    """
    Derive the slot following the given one.

    Raises:
        ValueError: If the token is not valid base32
    """
    return b32encode(hashlib.sha256(b32decode(token)).digest())


def sequence(seed: str) -> Iterator[str]:
    """Yield seed, advance(seed), advance(advance(seed)), ..."""
    slot = seed
    while True:
        yield slot
        slot = advance(slot)


def candidates(watermark: str, poll_ahead: int) -> list[str]:
    """
    Slots to poll on an inbound scan.

    Returns the watermark followed by the next poll_ahead slots.
    """
    result = []
    for slot in sequence(watermark):
        result.append(slot)
        if len(result) > poll_ahead:
            break
    return result
