"""
Vault Exception Classes
"""


class VaultError(Exception):
    """Base exception for vault operations"""
    pass


class InvalidEncoding(VaultError, ValueError):
    """Raised when Base32 text contains characters outside the alphabet"""
    pass


class InvalidSecret(VaultError, ValueError):
    """Raised when a secret is empty or unusable"""
    pass


class UnsupportedAlgorithm(VaultError, ValueError):
    """Raised when a keyed-hash algorithm is not one of SHA-1/256/512"""
    pass


class InvalidCounter(VaultError, ValueError):
    """Raised when a HOTP counter is negative (time before the epoch offset)"""
    pass


class CryptoUnavailable(VaultError):
    """Raised when no cryptographic primitive provider is configured"""
    pass


class InvalidEnvelope(VaultError):
    """Raised when an envelope is missing salt, iv or cipher"""
    pass


class DecryptionFailed(VaultError):
    """Raised when authenticated decryption fails.

    Wrong password and corrupted ciphertext both end up here.
    """
    pass


class WeakPassword(VaultError):
    """Raised when the master password is below the minimum length"""
    pass


class InvalidPassword(VaultError):
    """Raised when unlock or restore cannot decrypt with the given password"""
    pass


class VaultLocked(VaultError):
    """Raised when an operation needs an unlocked vault"""
    pass


class EntryNotFound(VaultError, KeyError):
    """Raised when no entry matches the given id"""
    pass


class StorageUnavailable(VaultError):
    """Raised when durable storage is missing or failing"""
    pass


class BackupCorrupted(VaultError):
    """Raised when a backup is not JSON or has no entries"""
    pass


class InvalidOtpauthUri(VaultError, ValueError):
    """Raised when an otpauth:// URI cannot be parsed"""
    pass
