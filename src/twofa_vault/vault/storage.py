# Vault - Durable Key/Value Storage
#
# The vault store persists exactly one value (the envelope JSON) under
# one key, so storage only needs get / set / remove over strings.
#
# SQLiteStorage  - file-backed, WAL mode, one connection per call
# MemoryStorage  - process-local dict (tests, throwaway sessions)

import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

from .exceptions import StorageUnavailable

STORAGE_KEY = "twofa.vault"


class KeyValueStorage(Protocol):
    """Durable string storage used by VaultStore."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """Dict-backed storage. Nothing survives the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class SQLiteStorage:
    """SQLite key/value store for the encrypted vault envelope.

    Only ciphertext is ever written here; the file is safe to copy but
    should still be kept private.

    Args:
        db_path: Path to SQLite file. Defaults to data/vault.db.
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        self.db_path = Path(db_path) if db_path else Path("data/vault.db")
        self._initialized = False

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path))
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        return conn

    def _init_database(self) -> None:
        # Deferred to first use so a missing/readonly location surfaces as
        # StorageUnavailable where the vault actually needs storage.
        if self._initialized:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS vault_storage (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.commit()
        self._initialized = True

    def get(self, key: str) -> Optional[str]:
        """Get a stored value by key, or None."""
        try:
            self._init_database()
            with closing(self._connect()) as conn:
                row = conn.execute(
                    "SELECT value FROM vault_storage WHERE key = ?", (key,)
                ).fetchone()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"Secure storage read failed: {exc}") from exc
        if row is None:
            return None
        return row["value"]

    def set(self, key: str, value: str) -> None:
        """Store a value (upsert)."""
        now = datetime.now(timezone.utc).isoformat()
        try:
            self._init_database()
            with closing(self._connect()) as conn:
                conn.execute(
                    """INSERT INTO vault_storage (key, value, updated_at)
                       VALUES (?, ?, ?)
                       ON CONFLICT(key) DO UPDATE SET
                           value = excluded.value,
                           updated_at = excluded.updated_at""",
                    (key, value, now),
                )
                conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"Secure storage write failed: {exc}") from exc

    def remove(self, key: str) -> None:
        """Delete a stored value. Missing keys are ignored."""
        try:
            self._init_database()
            with closing(self._connect()) as conn:
                conn.execute("DELETE FROM vault_storage WHERE key = ?", (key,))
                conn.commit()
        except (sqlite3.Error, OSError) as exc:
            raise StorageUnavailable(f"Secure storage delete failed: {exc}") from exc
