# Vault - Cryptographic Primitive Provider
# Reference: RFC 2104 (HMAC), RFC 8018 (PBKDF2), NIST SP 800-38D (GCM)
#
# Thin async wrapper around the `cryptography` package. The code engine
# and envelope service never touch primitives directly; they go through
# a CryptoProvider so an absent provider surfaces as CryptoUnavailable.
#
# CPU-heavy calls (PBKDF2, AES-GCM) run in a worker thread so the event
# loop keeps ticking while a key is being stretched.

import asyncio
import os
from enum import Enum
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import CryptoUnavailable, DecryptionFailed, UnsupportedAlgorithm


class HashAlgorithm(str, Enum):
    """Keyed-hash algorithms accepted for TOTP and PBKDF2."""

    SHA1 = "SHA-1"
    SHA256 = "SHA-256"
    SHA512 = "SHA-512"

    @classmethod
    def parse(cls, value) -> "HashAlgorithm":
        """Accept 'SHA-1', 'sha1', 'SHA256', '512', ... and return the member."""
        if isinstance(value, cls):
            return value
        text = str(value or cls.SHA1.value).strip().upper().replace("_", "-")
        if not text.startswith("SHA"):
            text = f"SHA-{text}"
        if not text.startswith("SHA-"):
            text = "SHA-" + text[3:]
        for member in cls:
            if member.value == text:
                return member
        raise UnsupportedAlgorithm(f"Unsupported hash algorithm: {value}")

    def to_hash(self) -> hashes.HashAlgorithm:
        return _HASHES[self]()


_HASHES = {
    HashAlgorithm.SHA1: hashes.SHA1,
    HashAlgorithm.SHA256: hashes.SHA256,
    HashAlgorithm.SHA512: hashes.SHA512,
}


class CryptoProvider:
    """
    Primitive provider backed by `cryptography`.

    Surface:
    - random_bytes: CSPRNG
    - derive_bits / derive_key: PBKDF2-HMAC
    - import_hmac_key / sign: HMAC
    - encrypt_aead / decrypt_aead: AES-GCM
    """

    @staticmethod
    def random_bytes(length: int) -> bytes:
        """Generate cryptographically random bytes."""
        return os.urandom(length)

    @staticmethod
    def _pbkdf2(password: bytes, salt: bytes, iterations: int,
                algorithm: HashAlgorithm, length_bits: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=algorithm.to_hash(),
            length=length_bits // 8,
            salt=salt,
            iterations=iterations,
            backend=default_backend()
        )
        return kdf.derive(password)

    async def derive_bits(
        self,
        password: str,
        salt: bytes,
        iterations: int,
        algorithm: HashAlgorithm = HashAlgorithm.SHA256,
        length_bits: int = 256,
    ) -> bytes:
        """Stretch a password into raw key material with PBKDF2."""
        return await asyncio.to_thread(
            self._pbkdf2,
            password.encode("utf-8"),
            salt,
            iterations,
            HashAlgorithm.parse(algorithm),
            length_bits,
        )

    async def derive_key(
        self,
        password: str,
        salt: bytes,
        iterations: int,
        algorithm: HashAlgorithm = HashAlgorithm.SHA256,
        length_bits: int = 256,
    ) -> AESGCM:
        """
        Derive an AES-GCM key from a password.

        The raw key bytes are not returned; the AESGCM object can only
        encrypt and decrypt.
        """
        raw = await self.derive_bits(password, salt, iterations, algorithm, length_bits)
        return AESGCM(raw)

    @staticmethod
    def import_hmac_key(key: bytes, algorithm: HashAlgorithm) -> hmac.HMAC:
        """Prepare an HMAC context for `key`; sign() copies it per message."""
        return hmac.HMAC(key, HashAlgorithm.parse(algorithm).to_hash(), backend=default_backend())

    @staticmethod
    def sign(key: hmac.HMAC, message: bytes) -> bytes:
        """HMAC `message` with a key from import_hmac_key()."""
        context = key.copy()
        context.update(message)
        return context.finalize()

    async def encrypt_aead(self, key: AESGCM, iv: bytes, plaintext: bytes) -> bytes:
        """AES-GCM encrypt; the result carries the authentication tag."""
        return await asyncio.to_thread(key.encrypt, iv, plaintext, None)

    async def decrypt_aead(self, key: AESGCM, iv: bytes, ciphertext: bytes) -> bytes:
        """
        AES-GCM decrypt.

        Raises:
            DecryptionFailed: Authentication tag did not verify
        """
        try:
            return await asyncio.to_thread(key.decrypt, iv, ciphertext, None)
        except (InvalidTag, ValueError) as exc:
            raise DecryptionFailed("Unable to decrypt payload") from exc


# Global provider instance
_provider: Optional[CryptoProvider] = None


def get_crypto_provider() -> CryptoProvider:
    """Get global crypto provider (singleton pattern)."""
    global _provider
    if _provider is None:
        _provider = CryptoProvider()
    return _provider


def require_provider(provider: Optional[CryptoProvider]) -> CryptoProvider:
    """Return `provider` or raise CryptoUnavailable if there is none."""
    if provider is None:
        raise CryptoUnavailable("Cryptographic provider is not available in this environment")
    return provider
