"""
slotmail Cryptography Module

RSA primitives for the handshake envelope:
- Signature: raw RSA over the SHA-256 digest of the payload
- Encryption: raw RSA applied block by block, each plaintext block XORed
  with the previous ciphertext block before encryption

Key generation and serialization go through the cryptography package; the
block operations work on the key numbers directly since the chained
construction needs unpadded RSA.
"""

import os
import struct
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

logger = logging.getLogger(__name__)

DEFAULT_KEY_SIZE = 2048
PUBLIC_EXPONENT = 65537
LENGTH_PREFIX = struct.Struct(">I")


class CryptoError(ValueError):
    """Decryption or signature failure."""
    pass


@dataclass(frozen=True)
class PublicKey:
    """RSA public key as published in a mailsite."""
    modulus: int
    exponent: int

    @property
    def block_size(self) -> int:
        """Ciphertext block size in bytes."""
        return (self.modulus.bit_length() + 7) // 8

    @classmethod
    def from_private(cls, key: rsa.RSAPrivateKey) -> "PublicKey":
        numbers = key.public_key().public_numbers()
        return cls(modulus=numbers.n, exponent=numbers.e)

    def to_cryptography(self) -> rsa.RSAPublicKey:
        return rsa.RSAPublicNumbers(self.exponent, self.modulus).public_key()


def generate_private_key(key_size: int = DEFAULT_KEY_SIZE) -> rsa.RSAPrivateKey:
    """Generate a long-term RSA key."""
    return rsa.generate_private_key(public_exponent=PUBLIC_EXPONENT, key_size=key_size)


def load_private_key(path: Path, password: Optional[bytes] = None) -> rsa.RSAPrivateKey:
    """Load a PEM-encoded RSA private key."""
    with open(path, "rb") as f:
        key = serialization.load_pem_private_key(f.read(), password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError(f"{path} does not hold an RSA key")
    return key


def save_private_key(key: rsa.RSAPrivateKey, path: Path):
    """Write a PEM-encoded private key readable only by the owner."""
    pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(pem)


def sha256(data: bytes) -> bytes:
    digest = hashes.Hash(hashes.SHA256())
    digest.update(data)
    return digest.finalize()


def _private_op(key: rsa.RSAPrivateKey, value: int) -> int:
    numbers = key.private_numbers()
    return pow(value, numbers.d, numbers.public_numbers.n)


def sign(key: rsa.RSAPrivateKey, data: bytes) -> bytes:
    """Sign the SHA-256 digest of data. The signature is one modulus-sized block."""
    size = (key.key_size + 7) // 8
    sig = _private_op(key, int.from_bytes(sha256(data), "big"))
    return sig.to_bytes(size, "big")


def verify(public: PublicKey, data: bytes, signature: bytes) -> bool:
    """Check a signature made by sign()."""
    if len(signature) != public.block_size:
        return False
    value = int.from_bytes(signature, "big")
    if value >= public.modulus:
        return False
    recovered = pow(value, public.exponent, public.modulus)
    return recovered == int.from_bytes(sha256(data), "big")


def _xor(block: bytes, mask: bytes) -> bytes:
    return bytes(a ^ b for a, b in zip(block, mask))


class ChainedBlockCipher:
    """
    Chained raw-RSA encryption for payloads larger than one block.

    The plaintext is prefixed with its length, split into blocks one byte
    shorter than the modulus, and each block is XORed with the previous
    ciphertext block (zeros for the first) before encryption. Decryption
    reverses the chain in order.
    """

    @staticmethod
    def encrypt(public: PublicKey, plaintext: bytes) -> bytes:
        out_size = public.block_size
        in_size = out_size - 1
        if in_size < 1:
            raise CryptoError("modulus too small")

        data = LENGTH_PREFIX.pack(len(plaintext)) + plaintext
        if len(data) % in_size:
            data += bytes(in_size - len(data) % in_size)

        previous = bytes(out_size)
        blocks = []
        for i in range(0, len(data), in_size):
            block = _xor(data[i:i + in_size], previous)
            value = pow(int.from_bytes(block, "big"), public.exponent, public.modulus)
            previous = value.to_bytes(out_size, "big")
            blocks.append(previous)

        logger.debug(f"Encrypted {len(plaintext)} bytes into {len(blocks)} blocks")
        return b"".join(blocks)

    @staticmethod
    def decrypt(key: rsa.RSAPrivateKey, ciphertext: bytes) -> bytes:
        """
        Raises:
            CryptoError: If the ciphertext is malformed or the key is wrong
        """
        out_size = (key.key_size + 7) // 8
        in_size = out_size - 1
        if not ciphertext or len(ciphertext) % out_size:
            raise CryptoError("ciphertext is not a whole number of blocks")

        modulus = key.private_numbers().public_numbers.n
        previous = bytes(out_size)
        plain = bytearray()
        for i in range(0, len(ciphertext), out_size):
            block = ciphertext[i:i + out_size]
            value = int.from_bytes(block, "big")
            if value >= modulus:
                raise CryptoError("ciphertext block out of range")
            decrypted = _private_op(key, value)
            if decrypted.bit_length() > in_size * 8:
                raise CryptoError("decryption failed")
            plain += _xor(decrypted.to_bytes(in_size, "big"), previous)
            previous = block

        if len(plain) < LENGTH_PREFIX.size:
            raise CryptoError("decrypted payload too short")
        (length,) = LENGTH_PREFIX.unpack_from(plain)
        body = bytes(plain[LENGTH_PREFIX.size:])
        if length > len(body) or any(body[length:]):
            raise CryptoError("decryption failed")
        return body[:length]
