from __future__ import annotations

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes


BLOCK_SIZE = 16
# Asset bundles only carry the bit-flip on a fixed-size header
OBFUSCATED_PREFIX = 132


def _cipher(key: bytes, iv: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(iv))


def encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    """AES-CBC encrypt `plaintext`, always appending 1-16 bytes of padding.

    Each pad byte equals the pad length, so a block-aligned input receives a
    full extra block of 0x10 bytes.
    """
    padder = padding.PKCS7(BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = _cipher(key, iv).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytes:
    """AES-CBC decrypt and strip padding.

    The trailing byte is trusted as the pad count; the pad content itself is
    not checked.
    """
    if not ciphertext:
        return b""
    decryptor = _cipher(key, iv).decryptor()
    plaintext = decryptor.update(ciphertext) + decryptor.finalize()
    return plaintext[: len(plaintext) - plaintext[-1]]


def deobfuscate(data: bytes) -> bytes:
    out = bytearray(data)
    for i in range(min(OBFUSCATED_PREFIX, len(out))):
        if (i + 4) % 8 < 5:
            out[i] ^= 0xFF
    return bytes(out)


class SekaiCipher:
    """Key/IV pair used for every encrypted API payload."""

    def __init__(self, key: str | bytes, iv: str | bytes) -> None:
        key_bytes = key.encode("utf-8") if isinstance(key, str) else key
        iv_bytes = iv.encode("utf-8") if isinstance(iv, str) else iv
        if len(key_bytes) not in (16, 24, 32):
            raise ValueError("AES key must be 16, 24 or 32 bytes")
        if len(iv_bytes) != BLOCK_SIZE:
            raise ValueError("AES-CBC iv must be 16 bytes")
        self._key = key_bytes
        self._iv = iv_bytes

    def encrypt(self, plaintext: bytes) -> bytes:
        return encrypt(plaintext, self._key, self._iv)

    def decrypt(self, ciphertext: bytes) -> bytes:
        return decrypt(ciphertext, self._key, self._iv)


__all__ = [
    "BLOCK_SIZE",
    "OBFUSCATED_PREFIX",
    "SekaiCipher",
    "decrypt",
    "deobfuscate",
    "encrypt",
]
