# Vault Module - Encrypted TOTP Secret Vault
#
# Base32 codec, HOTP/TOTP code engine, PBKDF2 + AES-256-GCM envelopes,
# and the debounced vault store that keeps entries encrypted at rest.

from .base32 import decode as base32_decode
from .base32 import encode as base32_encode
from .base32 import random_secret
from .encryption import EncryptionMeta, EnvelopeService
from .exceptions import (
    BackupCorrupted,
    CryptoUnavailable,
    DecryptionFailed,
    EntryNotFound,
    InvalidEncoding,
    InvalidCounter,
    InvalidEnvelope,
    InvalidOtpauthUri,
    InvalidPassword,
    InvalidSecret,
    StorageUnavailable,
    UnsupportedAlgorithm,
    VaultError,
    VaultLocked,
    WeakPassword,
)
from .models import (
    CalibrationResult,
    EncryptionEnvelope,
    GeneratedToken,
    ImportResult,
    PersistState,
    PersistStatus,
    TimeWindow,
    VaultEntry,
    VaultStats,
    normalize_entry,
)
from .otpauth import format_otpauth_uri, parse_otpauth_uri
from .provider import CryptoProvider, HashAlgorithm, get_crypto_provider
from .storage import STORAGE_KEY, KeyValueStorage, MemoryStorage, SQLiteStorage
from .totp import (
    TotpEngine,
    generate_batch,
    generate_totp,
    get_time_window,
    get_totp_engine,
    verify_totp,
)
from .vault_store import VaultStore

__all__ = [
    # Codec
    "base32_decode",
    "base32_encode",
    "random_secret",
    # Code engine
    "TotpEngine",
    "get_totp_engine",
    "get_time_window",
    "generate_totp",
    "verify_totp",
    "generate_batch",
    # Encryption
    "EnvelopeService",
    "EncryptionMeta",
    "CryptoProvider",
    "HashAlgorithm",
    "get_crypto_provider",
    # Store
    "VaultStore",
    "KeyValueStorage",
    "MemoryStorage",
    "SQLiteStorage",
    "STORAGE_KEY",
    # Models
    "VaultEntry",
    "EncryptionEnvelope",
    "GeneratedToken",
    "TimeWindow",
    "ImportResult",
    "CalibrationResult",
    "VaultStats",
    "PersistState",
    "PersistStatus",
    "normalize_entry",
    # otpauth
    "parse_otpauth_uri",
    "format_otpauth_uri",
    # Errors
    "VaultError",
    "InvalidEncoding",
    "InvalidSecret",
    "UnsupportedAlgorithm",
    "InvalidCounter",
    "CryptoUnavailable",
    "InvalidEnvelope",
    "DecryptionFailed",
    "WeakPassword",
    "InvalidPassword",
    "VaultLocked",
    "EntryNotFound",
    "StorageUnavailable",
    "BackupCorrupted",
    "InvalidOtpauthUri",
]
