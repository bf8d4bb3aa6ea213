# Vault - Envelope Service
# Reference: RFC 8018 (PBKDF2), NIST SP 800-38D (AES-GCM)
#
# Master password -> encryption key (PBKDF2)
# Vault payload encryption (AES-256-GCM) into a versioned envelope
# Iteration count self-calibrated to the host CPU

import base64
import binascii
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core import EventType, get_audit_logger
from .exceptions import DecryptionFailed, InvalidEnvelope
from .models import CalibrationResult, EncryptionEnvelope
from .provider import CryptoProvider, HashAlgorithm, get_crypto_provider, require_provider

logger = logging.getLogger(__name__)

_DEFAULT = object()

CALIBRATION_PASSWORD = "twofa-vault-calibrate"


@dataclass
class EncryptionMeta:
    """Envelope parameters carried over from the previously stored envelope."""

    salt: Optional[str] = None
    version: Optional[int] = None


class EnvelopeService:
    """
    Password-based encryption of JSON payloads.

    Flow:
    1. PBKDF2 derives a 256-bit key from password + salt
    2. AES-256-GCM encrypts the JSON text under a fresh 96-bit nonce
    3. Salt, nonce, ciphertext and derivation parameters are bundled
       into an EncryptionEnvelope

    Decryption derives with the envelope's own iteration count and hash,
    so raising the default never orphans older envelopes.
    """

    # PBKDF2 parameters (OWASP recommendations)
    PBKDF2_ITERATIONS = 600_000  # OWASP 2023: 600k iterations for PBKDF2-SHA256
    KEY_LENGTH = 256  # bits, AES-256
    SALT_LENGTH = 16  # 128-bit salt
    NONCE_LENGTH = 12  # 96-bit nonce for GCM (recommended)
    FORMAT_VERSION = 1

    # Calibration parameters
    CALIBRATION_FLOOR = 150_000
    CALIBRATION_GROWTH = 1.25

    def __init__(
        self,
        provider: Optional[CryptoProvider] = _DEFAULT,
        iterations: int = PBKDF2_ITERATIONS,
        hash: str = HashAlgorithm.SHA256.value,
        key_length: int = KEY_LENGTH,
    ):
        self.provider = get_crypto_provider() if provider is _DEFAULT else provider
        self.iterations = iterations
        self.hash = HashAlgorithm.parse(hash).value
        self.key_length = key_length

    @staticmethod
    def encode_for_storage(data: bytes) -> str:
        """Encode binary data as base64 text."""
        return base64.b64encode(data).decode("utf-8")

    @staticmethod
    def decode_from_storage(data: str) -> bytes:
        """Decode base64 text; malformed input is an InvalidEnvelope."""
        try:
            return base64.b64decode(data.encode("utf-8"), validate=True)
        except (binascii.Error, ValueError, AttributeError) as exc:
            raise InvalidEnvelope("Invalid encrypted payload") from exc

    async def derive_key(
        self,
        password: str,
        salt: bytes,
        iterations: Optional[int] = None,
        hash: Optional[str] = None,
    ) -> AESGCM:
        """
        Derive an encrypt/decrypt-only AES-GCM key via PBKDF2.

        Args:
            password: Master password
            salt: Random salt (stored in the envelope)
            iterations: Override for the service default
            hash: Override for the service hash
        """
        provider = require_provider(self.provider)
        return await provider.derive_key(
            password,
            salt,
            iterations or self.iterations,
            HashAlgorithm.parse(hash or self.hash),
            self.key_length,
        )

    async def encrypt(
        self,
        password: str,
        payload: Any,
        meta: Optional[Union[EncryptionMeta, Dict[str, Any]]] = None,
    ) -> EncryptionEnvelope:
        """
        Encrypt a JSON-serializable payload.

        A salt in `meta` is reused (same session, repeated saves); a new
        nonce is drawn on every call regardless.

        Returns:
            EncryptionEnvelope (persisted_at left unset)
        """
        provider = require_provider(self.provider)
        if isinstance(meta, dict):
            meta = EncryptionMeta(salt=meta.get("salt"), version=meta.get("version"))
        meta = meta or EncryptionMeta()

        if meta.salt:
            salt = self.decode_from_storage(meta.salt)
        else:
            salt = provider.random_bytes(self.SALT_LENGTH)

        key = await self.derive_key(password, salt)
        nonce = provider.random_bytes(self.NONCE_LENGTH)
        plaintext = json.dumps(payload).encode("utf-8")
        ciphertext = await provider.encrypt_aead(key, nonce, plaintext)

        return EncryptionEnvelope(
            salt=self.encode_for_storage(salt),
            iv=self.encode_for_storage(nonce),
            cipher=self.encode_for_storage(ciphertext),
            version=meta.version or self.FORMAT_VERSION,
            iterations=self.iterations,
            hash=self.hash,
        )

    async def decrypt(
        self,
        password: str,
        envelope: Union[EncryptionEnvelope, Dict[str, Any], str],
    ) -> Any:
        """
        Decrypt an envelope back into its payload.

        Raises:
            InvalidEnvelope: salt, iv or cipher missing or not base64
            DecryptionFailed: Wrong password or tampered ciphertext
                (deliberately not distinguished)
        """
        provider = require_provider(self.provider)
        envelope = EncryptionEnvelope.coerce(envelope)

        salt = self.decode_from_storage(envelope.salt)
        nonce = self.decode_from_storage(envelope.iv)
        ciphertext = self.decode_from_storage(envelope.cipher)

        key = await self.derive_key(
            password,
            salt,
            iterations=envelope.iterations or self.iterations,
            hash=envelope.hash or self.hash,
        )
        plaintext = await provider.decrypt_aead(key, nonce, ciphertext)

        try:
            return json.loads(plaintext.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DecryptionFailed("Unable to decrypt payload") from exc

    async def calibrate_iterations(
        self,
        target_ms: float = 250,
        max_iterations: int = 1_200_000,
    ) -> CalibrationResult:
        """
        Grow the PBKDF2 iteration count until one derivation costs
        at least `target_ms` on this machine.

        Starts at max(150k, 0.75 * current) and multiplies by 1.25 per
        step, never beyond `max_iterations`. The stored count is only
        ever raised.
        """
        provider = require_provider(self.provider)
        salt = provider.random_bytes(self.SALT_LENGTH)
        candidate = min(
            max_iterations,
            max(self.CALIBRATION_FLOOR, math.floor(self.iterations * 0.75)),
        )
        duration_ms = 0.0

        while True:
            started = time.perf_counter()
            await provider.derive_bits(
                CALIBRATION_PASSWORD,
                salt,
                candidate,
                HashAlgorithm.parse(self.hash),
                self.key_length,
            )
            duration_ms = (time.perf_counter() - started) * 1000
            if duration_ms >= target_ms or candidate >= max_iterations:
                break
            candidate = min(max_iterations, round(candidate * self.CALIBRATION_GROWTH))

        previous = self.iterations
        self.iterations = max(self.iterations, candidate)

        logger.info(
            "PBKDF2 calibration: %d iterations in %.1f ms (was %d)",
            candidate, duration_ms, previous,
        )
        get_audit_logger().log_vault_event(
            EventType.ITERATIONS_CALIBRATED,
            "PBKDF2 iterations calibrated",
            details={"iterations": self.iterations, "previous": previous,
                     "duration_ms": round(duration_ms, 1)},
        )
        return CalibrationResult(iterations=self.iterations, duration_ms=duration_ms)
