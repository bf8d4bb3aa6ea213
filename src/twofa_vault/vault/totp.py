# Vault - Code Engine (HOTP / TOTP)
# Reference: RFC 4226 (HOTP), RFC 6238 (TOTP)
#
# Codes are regenerated every second for every entry on screen, so the
# engine keeps two bounded caches:
#   secret text          -> decoded key bytes
#   (algorithm, secret)  -> prepared HMAC key
# Both evict the oldest insert once over capacity.

import asyncio
import functools
import math
import secrets
import struct
import time
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .base32 import decode, sanitize
from .exceptions import InvalidCounter, InvalidSecret
from .models import DEFAULT_DIGITS, DEFAULT_PERIOD, GeneratedToken, TimeWindow, VaultEntry
from .provider import CryptoProvider, HashAlgorithm, get_crypto_provider, require_provider

SECRET_CACHE_LIMIT = 256
KEY_CACHE_LIMIT = 256

_DEFAULT = object()

Comparator = Callable[[VaultEntry, VaultEntry], int]


def _now_ms() -> int:
    return int(time.time() * 1000)


def dynamic_truncate(digest: bytes) -> int:
    """
    RFC 4226 section 5.3 dynamic truncation.

    offset = low nibble of the last byte; take 4 bytes from there and
    clear the top bit, giving a 31-bit integer.
    """
    offset = digest[-1] & 0x0F
    return (
        ((digest[offset] & 0x7F) << 24)
        | ((digest[offset + 1] & 0xFF) << 16)
        | ((digest[offset + 2] & 0xFF) << 8)
        | (digest[offset + 3] & 0xFF)
    )


def default_comparator(a: VaultEntry, b: VaultEntry) -> int:
    """Issuer, then label."""
    left, right = (a.issuer, a.label), (b.issuer, b.label)
    return (left > right) - (left < right)


class TotpEngine:
    """
    HOTP/TOTP generator with key caching.

    Stateless per call apart from the caches. Pass provider=None to model
    an environment without crypto support (every call raises
    CryptoUnavailable).
    """

    def __init__(
        self,
        provider: Optional[CryptoProvider] = _DEFAULT,
        secret_cache_limit: int = SECRET_CACHE_LIMIT,
        key_cache_limit: int = KEY_CACHE_LIMIT,
    ):
        self.provider = get_crypto_provider() if provider is _DEFAULT else provider
        self._secret_cache_limit = secret_cache_limit
        self._key_cache_limit = key_cache_limit
        # OrderedDicts used as insertion-ordered bounded maps
        self._secret_bytes: "OrderedDict[str, bytes]" = OrderedDict()
        self._hmac_keys: "OrderedDict[Tuple[str, str], object]" = OrderedDict()

    # ------------------------------------------------------------------
    # Caches
    # ------------------------------------------------------------------

    @staticmethod
    def _trim(cache: OrderedDict, limit: int) -> None:
        while len(cache) > limit:
            cache.popitem(last=False)  # evict oldest

    def _get_secret_bytes(self, secret: str) -> bytes:
        cached = self._secret_bytes.get(secret)
        if cached is not None:
            return cached
        key_bytes = decode(secret)
        self._secret_bytes[secret] = key_bytes
        self._trim(self._secret_bytes, self._secret_cache_limit)
        return key_bytes

    def _get_hmac_key(self, key_bytes: bytes, secret: str, algorithm: HashAlgorithm):
        cache_key = (algorithm.value, secret)
        cached = self._hmac_keys.get(cache_key)
        if cached is not None:
            return cached
        provider = require_provider(self.provider)
        key = provider.import_hmac_key(key_bytes, algorithm)
        self._hmac_keys[cache_key] = key
        self._trim(self._hmac_keys, self._key_cache_limit)
        return key

    def clear_caches(self) -> None:
        self._secret_bytes.clear()
        self._hmac_keys.clear()

    @property
    def cache_sizes(self) -> Dict[str, int]:
        return {"secrets": len(self._secret_bytes), "keys": len(self._hmac_keys)}

    # ------------------------------------------------------------------
    # Time windows
    # ------------------------------------------------------------------

    @staticmethod
    def time_window(
        period: int = DEFAULT_PERIOD,
        timestamp_ms: Optional[int] = None,
        epoch: int = 0,
    ) -> TimeWindow:
        """
        Split wall-clock time into a TOTP counter and window position.

        Args:
            period: Window length in seconds
            timestamp_ms: Unix time in milliseconds (default: now)
            epoch: T0 offset in seconds
        """
        if timestamp_ms is None:
            timestamp_ms = _now_ms()
        elapsed = math.floor((timestamp_ms - epoch * 1000) / 1000)
        counter = elapsed // period
        seconds_into_window = elapsed - counter * period
        return TimeWindow(
            counter=counter,
            seconds_into_window=seconds_into_window,
            expires_in=period - seconds_into_window,
            period=period,
        )

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _code_for_counter(self, secret: str, counter: int, digits: int, algorithm) -> str:
        normalized = sanitize(secret)
        if not normalized:
            raise InvalidSecret("Secret is required")
        if counter < 0:
            raise InvalidCounter("Counter must not be negative")
        provider = require_provider(self.provider)
        hash_algorithm = HashAlgorithm.parse(algorithm)

        key_bytes = self._get_secret_bytes(normalized)
        key = self._get_hmac_key(key_bytes, normalized, hash_algorithm)
        # RFC 4226: counter as 8-byte big-endian unsigned integer
        digest = provider.sign(key, struct.pack(">Q", counter))

        code = dynamic_truncate(digest) % (10 ** digits)
        return str(code).zfill(digits)

    async def generate_hotp(
        self,
        secret: str,
        counter: int,
        digits: int = DEFAULT_DIGITS,
        algorithm=HashAlgorithm.SHA1,
    ) -> str:
        """HOTP code for an explicit counter (RFC 4226).

        Raises:
            InvalidCounter: counter is negative
        """
        return await self._code_for_counter(secret, counter, int(digits or DEFAULT_DIGITS), algorithm)

    async def generate(
        self,
        secret: str,
        digits: int = DEFAULT_DIGITS,
        period: int = DEFAULT_PERIOD,
        algorithm=HashAlgorithm.SHA1,
        timestamp_ms: Optional[int] = None,
        epoch: int = 0,
    ) -> str:
        """
        TOTP code for `secret` at `timestamp_ms` (RFC 6238).

        Args:
            secret: Base32 secret; non-alphabet characters are ignored
            digits: Code length
            period: Window length in seconds
            algorithm: SHA-1 (default), SHA-256 or SHA-512
            timestamp_ms: Unix time in milliseconds (default: now)
            epoch: T0 offset in seconds

        Returns:
            Zero-padded code string

        Raises:
            InvalidSecret: Secret empty after normalization
            InvalidCounter: timestamp_ms falls before the epoch offset
            CryptoUnavailable: No primitive provider
        """
        window = self.time_window(int(period or DEFAULT_PERIOD), timestamp_ms, epoch or 0)
        return await self._code_for_counter(
            secret, window.counter, int(digits or DEFAULT_DIGITS), algorithm
        )

    async def verify(
        self,
        secret: str,
        candidate: str,
        window: int = 1,
        digits: int = DEFAULT_DIGITS,
        period: int = DEFAULT_PERIOD,
        algorithm=HashAlgorithm.SHA1,
        timestamp_ms: Optional[int] = None,
        epoch: int = 0,
    ) -> bool:
        """
        Check `candidate` against codes from -window..+window periods.

        A candidate of the wrong length fails without computing digests.
        Comparison is constant-time.
        """
        token = (candidate or "").strip()
        if len(token) != digits:
            return False

        if timestamp_ms is None:
            timestamp_ms = _now_ms()

        for step in range(-window, window + 1):
            shifted = timestamp_ms + step * period * 1000
            if shifted < epoch * 1000:
                continue  # before T0, no counter
            code = await self.generate(
                secret,
                digits=digits,
                period=period,
                algorithm=algorithm,
                timestamp_ms=shifted,
                epoch=epoch,
            )
            if secrets.compare_digest(code, token):
                return True
        return False

    async def generate_batch(
        self,
        entries: Iterable[VaultEntry],
        timestamp_ms: Optional[int] = None,
        sort: bool = True,
        comparator: Optional[Comparator] = None,
    ) -> List[GeneratedToken]:
        """
        Generate one token per entry, concurrently.

        Sorted by issuer then label unless `sort` is False (input order
        kept) or a custom `comparator(a, b) -> int` is given.
        """
        if timestamp_ms is None:
            timestamp_ms = _now_ms()

        working_set = list(entries)
        if sort:
            working_set.sort(key=functools.cmp_to_key(comparator or default_comparator))

        async def _one(entry: VaultEntry) -> GeneratedToken:
            epoch = entry.epoch or 0
            code = await self.generate(
                entry.secret,
                digits=entry.digits,
                period=entry.period,
                algorithm=entry.algorithm,
                timestamp_ms=timestamp_ms,
                epoch=epoch,
            )
            window = self.time_window(entry.period, timestamp_ms, epoch)
            return GeneratedToken(
                id=entry.id,
                issuer=entry.issuer,
                label=entry.label,
                code=code,
                expires_in=window.expires_in,
                digits=entry.digits,
            )

        return list(await asyncio.gather(*(_one(entry) for entry in working_set)))


# Global engine instance
_engine: Optional[TotpEngine] = None


def get_totp_engine() -> TotpEngine:
    """Get global code engine (singleton pattern)."""
    global _engine
    if _engine is None:
        _engine = TotpEngine()
    return _engine


def get_time_window(period: int = DEFAULT_PERIOD, timestamp_ms: Optional[int] = None,
                    epoch: int = 0) -> TimeWindow:
    return TotpEngine.time_window(period, timestamp_ms, epoch)


async def generate_totp(secret: str, **options) -> str:
    """Convenience wrapper around the global engine's generate()."""
    return await get_totp_engine().generate(secret, **options)


async def verify_totp(secret: str, candidate: str, **options) -> bool:
    """Convenience wrapper around the global engine's verify()."""
    return await get_totp_engine().verify(secret, candidate, **options)


async def generate_batch(entries: Iterable[VaultEntry], **options) -> List[GeneratedToken]:
    """Convenience wrapper around the global engine's generate_batch()."""
    return await get_totp_engine().generate_batch(entries, **options)
