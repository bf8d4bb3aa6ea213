# Vault - Data Models
#
# VaultEntry            - one protected TOTP secret
# EncryptionEnvelope    - persisted / exported ciphertext bundle
# PersistStats / State  - write pipeline status for observers
# TimeWindow, GeneratedToken - derived values, never stored
#
# Entries travel inside the encrypted payload with camelCase keys so the
# envelope stays readable by other clients of the same format.

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from .base32 import canonicalize, decode, random_secret
from .exceptions import InvalidEnvelope, InvalidSecret, UnsupportedAlgorithm
from .provider import HashAlgorithm

MIN_DIGITS = 6
MAX_DIGITS = 10
DEFAULT_DIGITS = 6

MIN_PERIOD = 15
MAX_PERIOD = 60
DEFAULT_PERIOD = 30

# PBKDF2 counts above this are treated as a damaged envelope
MAX_ITERATIONS = 100_000_000


def now_iso() -> str:
    """Current UTC time as ISO 8601."""
    return datetime.now(timezone.utc).isoformat()


def _coerce_int(value: Any, default: int) -> int:
    """int(value), or `default` for missing/zero/non-numeric input."""
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return default
    return number or default


def _clamp(value: int, low: int, high: int) -> int:
    return min(high, max(low, value))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; naive values are taken as UTC.

    Returns None for anything that is not a readable timestamp.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip())
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _coerce_timestamp(value: Any) -> Optional[str]:
    parsed = parse_timestamp(value)
    return parsed.isoformat() if parsed is not None else None


def _coerce_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


@dataclass
class VaultEntry:
    """
    One protected secret.

    Only the vault store mutates entries; the code engine reads them.
    """

    id: str
    issuer: str
    label: str
    secret: str  # canonical Base32, no padding
    digits: int = DEFAULT_DIGITS
    period: int = DEFAULT_PERIOD
    algorithm: HashAlgorithm = HashAlgorithm.SHA1
    tags: List[str] = field(default_factory=list)
    group: Optional[str] = None
    favorite: bool = False
    notes: str = ""
    last_used: Optional[str] = None  # ISO 8601
    use_count: int = 0
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    epoch: int = 0  # seconds

    def touch(self, timestamp: Optional[str] = None) -> None:
        self.updated_at = timestamp or now_iso()

    def to_dict(self) -> Dict[str, Any]:
        """Wire form (camelCase) used inside the encrypted payload."""
        return {
            "id": self.id,
            "issuer": self.issuer,
            "label": self.label,
            "secret": self.secret,
            "digits": self.digits,
            "period": self.period,
            "algorithm": self.algorithm.value,
            "tags": list(self.tags),
            "group": self.group,
            "favorite": self.favorite,
            "notes": self.notes,
            "lastUsed": self.last_used,
            "useCount": self.use_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "epoch": self.epoch,
        }


def normalize_entry(partial: Dict[str, Any], keep_updated_at: bool = False) -> VaultEntry:
    """
    Build a VaultEntry from partial input (form data, import, backup).

    Accepts camelCase wire keys as well as snake_case attribute names.
    Digits and period are clamped; the secret is canonicalized and must
    decode as Base32. Group is kept as text; timestamps that do not parse
    as ISO 8601 are dropped (createdAt/updatedAt fall back to now) and
    naive ones are read as UTC.

    With keep_updated_at, a stored updatedAt survives (loading a saved
    vault); otherwise updated_at is stamped now.

    Raises:
        InvalidSecret: Secret missing or empty
        InvalidEncoding: Secret is not Base32
        UnsupportedAlgorithm: Unknown hash algorithm
    """
    if not isinstance(partial, dict):
        raise InvalidSecret("Secret is required")

    def pick(*keys, default=None):
        for key in keys:
            if partial.get(key) is not None:
                return partial[key]
        return default

    secret = canonicalize(str(pick("secret", default="")))
    if not secret:
        raise InvalidSecret("Secret is required")
    decode(secret)

    tags: List[str] = []
    raw_tags = pick("tags", default=[])
    if isinstance(raw_tags, (list, tuple, set)):
        for tag in raw_tags:
            tag = str(tag)
            if tag not in tags:
                tags.append(tag)

    timestamp = now_iso()
    use_count = _coerce_int(pick("useCount", "use_count", default=0), 0)

    return VaultEntry(
        id=str(pick("id", default="") or uuid4()),
        issuer=(str(pick("issuer", default="")) or "Unknown").strip(),
        label=(str(pick("label", default="")) or f"Account-{random_secret(6)}").strip(),
        secret=secret,
        digits=_clamp(_coerce_int(pick("digits"), DEFAULT_DIGITS), MIN_DIGITS, MAX_DIGITS),
        period=_clamp(_coerce_int(pick("period"), DEFAULT_PERIOD), MIN_PERIOD, MAX_PERIOD),
        algorithm=HashAlgorithm.parse(pick("algorithm") or HashAlgorithm.SHA1),
        tags=tags,
        group=_coerce_text(pick("group")),
        favorite=bool(pick("favorite", default=False)),
        notes=str(pick("notes", default="")),
        last_used=_coerce_timestamp(pick("lastUsed", "last_used")),
        use_count=max(0, use_count),
        created_at=_coerce_timestamp(pick("createdAt", "created_at")) or timestamp,
        updated_at=(_coerce_timestamp(pick("updatedAt", "updated_at")) if keep_updated_at else None)
        or timestamp,
        epoch=_coerce_int(pick("epoch", default=0), 0),
    )


@dataclass
class EncryptionEnvelope:
    """
    Persisted / exported representation of the encrypted vault.

    salt, iv and cipher are Base64 text. `iterations` and `hash` make
    the envelope self-describing even if service defaults change.
    """

    salt: str
    iv: str
    cipher: str
    version: int = 1
    iterations: int = 600_000
    hash: str = HashAlgorithm.SHA256.value
    persisted_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "salt": self.salt,
            "iv": self.iv,
            "cipher": self.cipher,
            "version": self.version,
            "iterations": self.iterations,
            "hash": self.hash,
        }
        if self.persisted_at:
            data["persistedAt"] = self.persisted_at
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EncryptionEnvelope":
        """
        Raises:
            InvalidEnvelope: salt, iv or cipher missing; iterations or
                hash present but unusable
        """
        if not isinstance(data, dict):
            raise InvalidEnvelope("Invalid encrypted payload")
        salt, iv, cipher = data.get("salt"), data.get("iv"), data.get("cipher")
        if not salt or not iv or not cipher:
            raise InvalidEnvelope("Invalid encrypted payload")

        # Missing iterations fall back to the service default (older envelopes)
        iterations = data.get("iterations")
        if iterations is not None:
            if isinstance(iterations, bool) or not isinstance(iterations, int) \
                    or not 0 < iterations <= MAX_ITERATIONS:
                raise InvalidEnvelope(f"Invalid iteration count: {iterations!r}")
        try:
            hash_algorithm = HashAlgorithm.parse(data.get("hash") or HashAlgorithm.SHA256)
        except UnsupportedAlgorithm as exc:
            raise InvalidEnvelope(f"Unsupported envelope hash: {data.get('hash')!r}") from exc

        return cls(
            salt=salt,
            iv=iv,
            cipher=cipher,
            version=_coerce_int(data.get("version"), 1),
            iterations=iterations or 0,
            hash=hash_algorithm.value,
            persisted_at=data.get("persistedAt"),
        )

    @classmethod
    def from_json(cls, text: str) -> "EncryptionEnvelope":
        try:
            data = json.loads(text)
        except (TypeError, ValueError) as exc:
            raise InvalidEnvelope("Invalid encrypted payload") from exc
        return cls.from_dict(data)

    @classmethod
    def coerce(cls, value: Union["EncryptionEnvelope", Dict[str, Any], str]) -> "EncryptionEnvelope":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls.from_json(value)
        return cls.from_dict(value)


class PersistStatus(str, Enum):
    """Write pipeline status."""

    IDLE = "idle"
    QUEUED = "queued"
    SAVING = "saving"
    ERROR = "error"


@dataclass
class PersistStats:
    status: PersistStatus = PersistStatus.IDLE
    pending_writes: int = 0
    last_persist_duration: float = 0.0  # ms
    last_persisted_at: Optional[str] = None
    last_error: Optional[str] = None
    queued_at: Optional[float] = None  # loop time, seconds


@dataclass
class PersistState(PersistStats):
    """PersistStats plus whether a write is scheduled or running."""

    scheduled: bool = False
    in_flight: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class TimeWindow:
    counter: int
    seconds_into_window: int
    expires_in: int
    period: int


@dataclass(frozen=True)
class GeneratedToken:
    id: str
    issuer: str
    label: str
    code: str
    expires_in: int
    digits: int


@dataclass
class ImportResult:
    """Outcome for one element of an import batch."""

    status: str  # "ok" | "failed"
    entry: Optional[VaultEntry] = None
    reason: Optional[str] = None
    input: Any = None

    @property
    def ok(self) -> bool:
        return self.status == "ok"


@dataclass(frozen=True)
class CalibrationResult:
    iterations: int
    duration_ms: float


@dataclass(frozen=True)
class VaultStats:
    count: int
    last_persisted_at: Optional[str]
    size: int  # bytes of the stored envelope

    def format_size(self) -> str:
        if self.size > 1024 * 1024:
            return f"{self.size / (1024 * 1024):.2f} MB"
        if self.size > 1024:
            return f"{self.size / 1024:.1f} KB"
        return f"{self.size} B"
