# Vault - Base32 Codec
# Reference: RFC 4648, Section 6
#
# Secrets are exchanged as Base32 text (authenticator apps, otpauth URIs)
# but the HMAC needs raw bytes. No '=' padding is ever emitted.

import os
import re

from .exceptions import InvalidEncoding, InvalidSecret

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ234567"

_LOOKUP = {char: index for index, char in enumerate(ALPHABET)}
_SEPARATORS = re.compile(r"[\s=\-]")
_NON_ALPHABET = re.compile(r"[^A-Z2-7]")


def sanitize(text: str) -> str:
    """Upper-case and drop every character outside the Base32 alphabet."""
    return _NON_ALPHABET.sub("", (text or "").upper())


def canonicalize(text: str) -> str:
    """Upper-case and drop separators (whitespace, hyphens, padding).

    Unlike sanitize(), anything else is kept so decode() can reject it.
    """
    return _SEPARATORS.sub("", (text or "").upper())


def decode(text: str) -> bytes:
    """
    Decode Base32 text to bytes.

    Separators are ignored; trailing bits that do not fill a whole byte
    are discarded.

    Raises:
        InvalidSecret: If text is empty
        InvalidEncoding: If a character is outside the alphabet
    """
    if not text:
        raise InvalidSecret("Secret is required")

    clean = canonicalize(text)
    bits = 0
    value = 0
    output = bytearray()

    for char in clean:
        index = _LOOKUP.get(char)
        if index is None:
            raise InvalidEncoding(f"Invalid Base32 character: {char}")
        value = ((value << 5) | index) & 0xFFFF
        bits += 5
        if bits >= 8:
            output.append((value >> (bits - 8)) & 0xFF)
            bits -= 8

    return bytes(output)


def encode(data: bytes) -> str:
    """Encode bytes as unpadded Base32 text."""
    if not data:
        return ""

    bits = 0
    value = 0
    output = []

    for byte in data:
        value = ((value << 8) | byte) & 0xFFFF
        bits += 8
        while bits >= 5:
            output.append(ALPHABET[(value >> (bits - 5)) & 31])
            bits -= 5

    if bits > 0:
        output.append(ALPHABET[(value << (5 - bits)) & 31])

    return "".join(output)


def random_secret(length: int = 32) -> str:
    """Random Base32 string of `length` characters (CSPRNG).

    Used for placeholder label suffixes, not for provisioning secrets.
    """
    return encode(os.urandom(length))[:length]
