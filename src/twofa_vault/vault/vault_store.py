# Vault Store - Encrypted TOTP Entry Collection
#
# In-memory entry list, encrypted at rest as a single envelope
# Locked / Unlocked state machine
# Debounced, strictly sequential persistence writes
# Encrypted backup export / restore
#
# Write pipeline states:
#   Idle       - nothing scheduled, nothing running
#   Scheduled  - a timer will start a write after persist_delay_ms
#   Writing    - a write holds the write lock
# Mutations inside one delay window collapse into one write. A request
# that arrives while a write is running waits for the lock and then
# writes again with the newer state.

import asyncio
import copy
import json
import logging
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..core import EventSeverity, EventType, get_audit_logger
from .encryption import EncryptionMeta, EnvelopeService
from .exceptions import (
    BackupCorrupted,
    DecryptionFailed,
    EntryNotFound,
    InvalidEnvelope,
    InvalidPassword,
    StorageUnavailable,
    VaultError,
    VaultLocked,
    WeakPassword,
)
from .models import (
    EncryptionEnvelope,
    ImportResult,
    PersistState,
    PersistStats,
    PersistStatus,
    VaultEntry,
    VaultStats,
    normalize_entry,
    now_iso,
    parse_timestamp,
)
from .storage import STORAGE_KEY, KeyValueStorage

logger = logging.getLogger(__name__)

DEFAULT_PERSIST_DELAY_MS = 250
MIN_PASSWORD_LENGTH = 8


def _consume_exception(future: asyncio.Future) -> None:
    # Fire-and-forget mutations never await their write; errors reach
    # on_persist_error instead.
    if not future.cancelled():
        future.exception()


class VaultStore:
    """
    Owns the decrypted TOTP entries for one unlocked session.

    Security:
    - Entries are only ever written as an AES-256-GCM envelope
    - The master password lives in memory only while unlocked
    - Wrong password and corrupted data are reported the same way
    - Audit logging for unlock, lock, backup and write failures

    Callers get copies of entries, never the store's own objects.
    """

    def __init__(
        self,
        storage: Optional[KeyValueStorage],
        envelope_service: Optional[EnvelopeService] = None,
        persist_delay_ms: int = DEFAULT_PERSIST_DELAY_MS,
    ):
        """
        Args:
            storage: Durable key/value storage (None: unavailable; every
                     operation that needs it raises StorageUnavailable)
            envelope_service: Encryption service (default: EnvelopeService())
            persist_delay_ms: Debounce delay for writes
        """
        self.storage = storage
        self.crypto = envelope_service or EnvelopeService()
        self.persist_delay_ms = persist_delay_ms

        self._entries: List[VaultEntry] = []
        self._password: Optional[str] = None
        self.last_persisted_at: Optional[str] = None

        # Observers
        self.on_persist_error: Optional[Callable[[BaseException], Any]] = None
        self.on_persist_state_change: Optional[Callable[[PersistState], Any]] = None

        # Write pipeline
        self._stats = PersistStats()
        self._timer: Optional[asyncio.TimerHandle] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Future] = None
        self._write_lock = asyncio.Lock()
        self._writing = False
        # Bumped on lock/clear so already-fired timers from an old
        # session do not write.
        self._session = 0

        self.logger = get_audit_logger()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def is_unlocked(self) -> bool:
        return bool(self._password)

    def has_data(self) -> bool:
        """True if an envelope is stored."""
        self._require_storage()
        return bool(self.storage.get(STORAGE_KEY))

    def get_stats(self) -> VaultStats:
        stored = self.storage.get(STORAGE_KEY) if self.storage is not None else None
        return VaultStats(
            count=len(self._entries),
            last_persisted_at=self.last_persisted_at,
            size=len((stored or "").encode("utf-8")),
        )

    def get_persist_state(self) -> PersistState:
        stats = self._stats
        return PersistState(
            status=stats.status,
            pending_writes=stats.pending_writes,
            last_persist_duration=stats.last_persist_duration,
            last_persisted_at=stats.last_persisted_at,
            last_error=stats.last_error,
            queued_at=stats.queued_at,
            scheduled=self._timer is not None,
            in_flight=self._writing,
        )

    # ------------------------------------------------------------------
    # Lock / unlock
    # ------------------------------------------------------------------

    async def unlock(self, password: str) -> List[VaultEntry]:
        """
        Unlock the vault, creating it if nothing is stored yet.

        Args:
            password: Master password (at least 8 characters)

        Returns:
            Snapshot of the decrypted entries

        Raises:
            StorageUnavailable: No storage configured
            WeakPassword: Password shorter than 8 characters
            InvalidPassword: Stored envelope could not be decrypted
        """
        self._require_storage()
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise WeakPassword(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

        stored = self.storage.get(STORAGE_KEY)
        if not stored:
            # First run: establish the envelope (and its salt) right away
            self._password = password
            self._entries = []
            await self.persist(immediate=True)
            self.logger.log_vault_event(EventType.VAULT_CREATED, "Vault created")
            return self.get_entries()

        try:
            envelope = EncryptionEnvelope.from_json(stored)
            payload = await self.crypto.decrypt(password, envelope)
            entries: List[VaultEntry] = []
            for raw in payload.get("entries") or []:
                self._upsert(entries, normalize_entry(raw, keep_updated_at=True))
        except (InvalidEnvelope, DecryptionFailed, ValueError, TypeError,
                AttributeError, OverflowError) as exc:
            self._reset_session("Vault unlock failed")
            self.logger.log_vault_event(
                EventType.VAULT_UNLOCK_FAILED,
                "Unlock failed: incorrect password or unreadable vault",
                severity=EventSeverity.INVESTIGATE,
            )
            raise InvalidPassword("Incorrect password or unreadable vault") from exc

        self._password = password
        self._entries = entries
        self.last_persisted_at = envelope.persisted_at
        self.logger.log_vault_event(
            EventType.VAULT_UNLOCKED,
            "Vault unlocked",
            details={"entries": len(entries)},
        )
        return self.get_entries()

    async def lock(self, flush: bool = False) -> None:
        """
        Lock the vault and drop decrypted entries from memory.

        A write that has been scheduled but not started is discarded
        (its awaiters get VaultLocked); a running write is awaited.

        Args:
            flush: Write pending changes before locking
        """
        was_unlocked = self.is_unlocked()
        if flush and was_unlocked:
            await self.flush_persist()

        self._cancel_scheduled_persist(VaultLocked("Vault locked before pending changes were saved"))
        await self._wait_for_write()

        self._password = None
        self._entries = []

        if was_unlocked:
            self.logger.log_vault_event(EventType.VAULT_LOCKED, "Vault locked")

    async def clear_all(self) -> None:
        """
        Erase the stored vault and return to Locked.

        When unlocked, the empty state is written first so a stale
        non-empty envelope is never left behind.
        """
        self._require_storage()
        if self.is_unlocked():
            self._entries = []
            await self.persist(immediate=True)

        self._cancel_scheduled_persist(VaultLocked("Vault cleared"))
        await self._wait_for_write()

        self.storage.remove(STORAGE_KEY)
        self._entries = []
        self._password = None
        self.last_persisted_at = None

        self.logger.log_vault_event(
            EventType.VAULT_CLEARED,
            "Vault data erased",
            severity=EventSeverity.ALERT,
        )

    # ------------------------------------------------------------------
    # Entry mutations
    # ------------------------------------------------------------------

    async def add_entry(self, partial: Dict[str, Any]) -> VaultEntry:
        """
        Add (or replace, by id) an entry.

        Raises:
            VaultLocked: Vault is locked
            InvalidSecret / InvalidEncoding: Bad secret
        """
        self._require_unlocked()
        entry = normalize_entry(partial)
        self._upsert(self._entries, entry)
        self._queue_persist()

        self.logger.log_vault_event(
            EventType.ENTRY_ADDED,
            f"Entry added: {entry.issuer}",
            details={"entry_id": entry.id},
        )
        return copy.deepcopy(entry)

    async def remove_entry(self, entry_id: str) -> None:
        self._require_unlocked()
        self._entries.remove(self._find(entry_id))
        self._queue_persist()

        self.logger.log_vault_event(
            EventType.ENTRY_REMOVED,
            "Entry removed",
            details={"entry_id": entry_id},
        )

    async def import_entries(self, batch: Iterable[Dict[str, Any]]) -> List[ImportResult]:
        """
        Add many entries; each one succeeds or fails on its own.

        Returns:
            One ImportResult per input element, in order
        """
        self._require_unlocked()
        results: List[ImportResult] = []
        for partial in batch or []:
            try:
                entry = normalize_entry(partial)
            except (VaultError, ValueError, TypeError) as exc:
                results.append(ImportResult(status="failed", reason=str(exc), input=partial))
                continue
            self._upsert(self._entries, entry)
            results.append(ImportResult(status="ok", entry=copy.deepcopy(entry)))

        imported = sum(1 for result in results if result.ok)
        if imported:
            self._queue_persist()

        self.logger.log_vault_event(
            EventType.ENTRIES_IMPORTED,
            f"Imported {imported} of {len(results)} entries",
            details={"imported": imported, "failed": len(results) - imported},
        )
        return results

    async def add_tag_to_entry(self, entry_id: str, tag: str) -> VaultEntry:
        self._require_unlocked()
        entry = self._find(entry_id)
        if tag not in entry.tags:
            entry.tags.append(tag)
            entry.touch()
            self._queue_persist()
        return copy.deepcopy(entry)

    async def remove_tag_from_entry(self, entry_id: str, tag: str) -> VaultEntry:
        self._require_unlocked()
        entry = self._find(entry_id)
        if tag in entry.tags:
            entry.tags = [t for t in entry.tags if t != tag]
            entry.touch()
            self._queue_persist()
        return copy.deepcopy(entry)

    async def set_group(self, entry_id: str, group: Optional[str]) -> VaultEntry:
        self._require_unlocked()
        entry = self._find(entry_id)
        group = group or None
        if entry.group != group:
            entry.group = group
            entry.touch()
            self._queue_persist()
        return copy.deepcopy(entry)

    async def toggle_favorite(self, entry_id: str) -> VaultEntry:
        self._require_unlocked()
        entry = self._find(entry_id)
        entry.favorite = not entry.favorite
        entry.touch()
        self._queue_persist()
        return copy.deepcopy(entry)

    async def update_notes(self, entry_id: str, notes: str) -> VaultEntry:
        self._require_unlocked()
        entry = self._find(entry_id)
        notes = notes or ""
        if entry.notes != notes:
            entry.notes = notes
            entry.touch()
            self._queue_persist()
        return copy.deepcopy(entry)

    async def increment_use_count(self, entry_id: str) -> VaultEntry:
        """
        Record one use of an entry (code copied).

        Raises:
            EntryNotFound: No entry with that id
        """
        updated = await self.increment_use_counts([entry_id])
        if not updated:
            raise EntryNotFound(f"Entry not found: {entry_id}")
        return updated[0]

    async def increment_use_counts(self, entry_ids: Iterable[str]) -> List[VaultEntry]:
        """
        Record uses for several entries at once.

        Repeated ids count once per occurrence; unknown ids are skipped.
        """
        self._require_unlocked()
        counts: Dict[str, int] = {}
        for entry_id in entry_ids or []:
            if entry_id:
                counts[entry_id] = counts.get(entry_id, 0) + 1
        if not counts:
            return []

        timestamp = now_iso()
        updated: List[VaultEntry] = []
        for entry_id, count in counts.items():
            entry = next((e for e in self._entries if e.id == entry_id), None)
            if entry is None:
                continue
            entry.use_count += count
            entry.last_used = timestamp
            entry.touch(timestamp)
            updated.append(copy.deepcopy(entry))

        if updated:
            self._queue_persist()
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_entries(self) -> List[VaultEntry]:
        """Snapshot of all entries."""
        return copy.deepcopy(self._entries)

    def get_entry(self, entry_id: str) -> VaultEntry:
        return copy.deepcopy(self._find(entry_id))

    def get_all_tags(self) -> List[str]:
        return sorted({tag for entry in self._entries for tag in entry.tags})

    def get_entries_by_tag(self, tag: str) -> List[VaultEntry]:
        return copy.deepcopy([entry for entry in self._entries if tag in entry.tags])

    def get_all_groups(self) -> List[str]:
        return sorted({entry.group for entry in self._entries if entry.group})

    def get_entries_by_group(self, group: Optional[str]) -> List[VaultEntry]:
        return copy.deepcopy([entry for entry in self._entries if entry.group == group])

    def get_favorites(self) -> List[VaultEntry]:
        return copy.deepcopy([entry for entry in self._entries if entry.favorite])

    def get_recently_used(self, limit: int = 10) -> List[VaultEntry]:
        def last_used(entry: VaultEntry) -> float:
            parsed = parse_timestamp(entry.last_used)
            return parsed.timestamp() if parsed is not None else float("-inf")

        used = [entry for entry in self._entries if entry.last_used]
        used.sort(key=last_used, reverse=True)
        return copy.deepcopy(used[:limit])

    def get_most_used(self, limit: int = 10) -> List[VaultEntry]:
        used = [entry for entry in self._entries if entry.use_count > 0]
        used.sort(key=lambda entry: entry.use_count, reverse=True)
        return copy.deepcopy(used[:limit])

    def search(self, query: str, collection: Optional[List[VaultEntry]] = None) -> List[VaultEntry]:
        """Case-insensitive match on issuer, label, tags, group and notes."""
        entries = self._entries if collection is None else collection
        if not query:
            return copy.deepcopy(list(entries))

        needle = query.lower()

        def matches(entry: VaultEntry) -> bool:
            return (
                needle in entry.issuer.lower()
                or needle in entry.label.lower()
                or any(needle in tag.lower() for tag in entry.tags)
                or bool(entry.group and needle in entry.group.lower())
                or bool(entry.notes and needle in entry.notes.lower())
            )

        return copy.deepcopy([entry for entry in entries if matches(entry)])

    # ------------------------------------------------------------------
    # Backup
    # ------------------------------------------------------------------

    async def export_encrypted(self) -> str:
        """
        Return the stored envelope text as a backup.

        Pending writes are flushed first, so the backup is exactly what
        is on disk.
        """
        self._require_unlocked()
        self._require_storage()
        await self.flush_persist()

        payload = self.storage.get(STORAGE_KEY)
        if not payload:
            raise VaultError("No data available for export")

        self.logger.log_vault_event(
            EventType.BACKUP_EXPORTED,
            "Encrypted backup exported",
            details={"entries": len(self._entries)},
        )
        return payload

    async def restore_from_envelope(
        self,
        envelope: Union[str, Dict[str, Any], EncryptionEnvelope],
    ) -> List[VaultEntry]:
        """
        Replace every entry with the contents of a backup.

        The backup must be encrypted with the current master password.

        Raises:
            BackupCorrupted: Not JSON, missing or unusable fields (salt, iv,
                cipher, iterations, hash) or missing entries
            InvalidPassword: Backup does not decrypt with this password
        """
        self._require_unlocked()
        self._require_storage()
        if not envelope:
            raise BackupCorrupted("Backup payload required")

        try:
            parsed = EncryptionEnvelope.coerce(envelope)
            payload = await self.crypto.decrypt(self._password, parsed)
        except (InvalidEnvelope, ValueError, TypeError, OverflowError) as exc:
            # Unusable salt, iv, iterations or hash
            raise BackupCorrupted("Backup file is corrupted") from exc
        except DecryptionFailed as exc:
            self.logger.log_vault_event(
                EventType.BACKUP_RESTORE_FAILED,
                "Backup could not be decrypted",
                severity=EventSeverity.ALERT,
            )
            raise InvalidPassword("Backup could not be decrypted with the current password") from exc

        raw_entries = payload.get("entries") if isinstance(payload, dict) else None
        if not isinstance(raw_entries, list):
            raise BackupCorrupted("Backup payload missing entries")

        try:
            restored = [normalize_entry(raw) for raw in raw_entries]
        except (VaultError, ValueError, TypeError) as exc:
            raise BackupCorrupted(f"Backup contains an invalid entry: {exc}") from exc

        entries: List[VaultEntry] = []
        for entry in restored:
            self._upsert(entries, entry)
        self._entries = entries
        await self.persist(immediate=True)

        self.logger.log_vault_event(
            EventType.BACKUP_RESTORED,
            "Vault restored from backup",
            details={"entries": len(entries)},
        )
        return self.get_entries()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def persist(self, immediate: bool = False) -> None:
        """
        Persist the current entries.

        Without `immediate`, the write is debounced: every caller inside
        one delay window awaits the same write and sees the same result.
        """
        if immediate:
            await self._run_persist()
            return
        self._require_unlocked()
        self._require_storage()
        await asyncio.shield(self._schedule_persist())

    async def flush_persist(self) -> None:
        """Run a scheduled/pending write now, or wait for a running one.

        After a failed write the current entries are written again.
        """
        if not self.is_unlocked():
            self._cancel_scheduled_persist(VaultLocked("Vault locked"))
            return
        if (
            self._pending is not None
            or self._timer is not None
            or self._stats.status == PersistStatus.ERROR
        ):
            await self._run_persist()
            return
        await self._wait_for_write()

    def _queue_persist(self) -> None:
        self._schedule_persist()

    def _schedule_persist(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        if self._pending is None:
            self._pending = loop.create_future()
            self._pending.add_done_callback(_consume_exception)

        if self._timer is None:
            self._timer = loop.call_later(
                self.persist_delay_ms / 1000, self._on_timer, self._session
            )

        self._stats.pending_writes += 1
        if self._stats.queued_at is None:
            self._stats.queued_at = loop.time()
        self._emit_persist_state(
            status=PersistStatus.SAVING if self._writing else PersistStatus.QUEUED,
            last_error=None,
        )
        return self._pending

    def _on_timer(self, session: int) -> None:
        self._timer = None
        self._timer_task = asyncio.get_running_loop().create_task(self._run_persist(session))
        self._timer_task.add_done_callback(_consume_exception)

    async def _run_persist(self, session: Optional[int] = None) -> None:
        self._require_unlocked()
        self._require_storage()
        self._cancel_timer()

        async with self._write_lock:
            if session is not None and session != self._session:
                return  # scheduled by a session that has since been locked
            self._require_unlocked()

            waiter, self._pending = self._pending, None
            claimed = self._stats.pending_writes
            self._writing = True
            started = time.perf_counter()
            self._emit_persist_state(status=PersistStatus.SAVING)

            try:
                envelope = await self._write_envelope()
            except asyncio.CancelledError:
                self._writing = False
                if waiter is not None and not waiter.done():
                    waiter.cancel()
                raise
            except Exception as exc:
                self._writing = False
                if waiter is not None and not waiter.done():
                    waiter.set_exception(exc)
                self._emit_persist_state(status=PersistStatus.ERROR, last_error=str(exc))
                self._handle_persist_error(exc)
                raise

            self._writing = False
            self._stats.pending_writes = max(0, self._stats.pending_writes - claimed)
            if self._pending is None:
                self._stats.queued_at = None
            self._emit_persist_state(
                status=PersistStatus.QUEUED if self._pending is not None else PersistStatus.IDLE,
                last_persist_duration=(time.perf_counter() - started) * 1000,
                last_persisted_at=envelope.persisted_at,
                last_error=None,
            )
            if waiter is not None and not waiter.done():
                waiter.set_result(None)

    async def _write_envelope(self) -> EncryptionEnvelope:
        # Snapshot before the first await: later mutations belong to the
        # next write.
        payload = {"entries": [entry.to_dict() for entry in self._entries]}
        password = self._password

        envelope = await self.crypto.encrypt(password, payload, self._get_envelope_meta())
        envelope.persisted_at = now_iso()
        self.storage.set(STORAGE_KEY, envelope.to_json())
        self.last_persisted_at = envelope.persisted_at
        return envelope

    def _get_envelope_meta(self) -> EncryptionMeta:
        """Salt and version of the stored envelope, reused for the next write."""
        raw = self.storage.get(STORAGE_KEY)
        if not raw:
            return EncryptionMeta()
        try:
            parsed = json.loads(raw)
        except ValueError:
            return EncryptionMeta()
        if not isinstance(parsed, dict):
            return EncryptionMeta()
        return EncryptionMeta(salt=parsed.get("salt"), version=parsed.get("version"))

    async def _wait_for_write(self) -> None:
        if self._writing:
            async with self._write_lock:
                pass

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _cancel_scheduled_persist(self, reason: BaseException) -> None:
        self._cancel_timer()
        self._session += 1
        if self._pending is not None and not self._pending.done():
            self._pending.set_exception(reason)
        self._pending = None
        self._stats.pending_writes = 0
        self._stats.queued_at = None
        if not self._writing:
            self._emit_persist_state(status=PersistStatus.IDLE)

    def _reset_session(self, reason: str) -> None:
        self._cancel_scheduled_persist(VaultLocked(reason))
        self._password = None
        self._entries = []

    def _handle_persist_error(self, error: BaseException) -> None:
        self.logger.log_vault_event(
            EventType.PERSIST_FAILED,
            f"Failed to persist encrypted vault: {error}",
            severity=EventSeverity.ALERT,
        )
        if callable(self.on_persist_error):
            try:
                self.on_persist_error(error)
            except Exception:
                logger.exception("Vault persistence error listener failed")
            return
        logger.warning("Failed to persist encrypted vault: %s", error)

    def _emit_persist_state(self, **patch: Any) -> None:
        for name, value in patch.items():
            setattr(self._stats, name, value)
        if callable(self.on_persist_state_change):
            try:
                self.on_persist_state_change(self.get_persist_state())
            except Exception:
                logger.exception("Vault persist state listener failed")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_unlocked(self) -> None:
        if not self._password:
            raise VaultLocked("Vault locked")

    def _require_storage(self) -> None:
        if self.storage is None:
            raise StorageUnavailable("Secure storage is not available in this environment")

    def _find(self, entry_id: str) -> VaultEntry:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        raise EntryNotFound(f"Entry not found: {entry_id}")

    @staticmethod
    def _upsert(entries: List[VaultEntry], entry: VaultEntry) -> None:
        for index, existing in enumerate(entries):
            if existing.id == entry.id:
                entries[index] = entry
                return
        entries.append(entry)
