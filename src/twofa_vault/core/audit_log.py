# Core - Audit Logging
#
# Append-only structured audit log for vault activity.
# Every unlock, lock, mutation batch, backup and persistence failure is
# recorded with a timestamp and event ID. Secrets, passwords and codes
# are never written to the log.

import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional
from uuid import uuid4

import structlog


class EventType(str, Enum):
    """Types of vault events that can be logged."""

    # Vault lifecycle
    VAULT_CREATED = "vault.created"
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_LOCKED = "vault.locked"
    VAULT_UNLOCK_FAILED = "vault.unlock.failed"
    VAULT_CLEARED = "vault.cleared"

    # Entries
    ENTRY_ADDED = "vault.entry.added"
    ENTRY_REMOVED = "vault.entry.removed"
    ENTRIES_IMPORTED = "vault.entries.imported"

    # Backup / persistence
    BACKUP_EXPORTED = "vault.backup.exported"
    BACKUP_RESTORED = "vault.backup.restored"
    BACKUP_RESTORE_FAILED = "vault.backup.restore_failed"
    PERSIST_FAILED = "vault.persist.failed"

    # Crypto
    ITERATIONS_CALIBRATED = "crypto.iterations.calibrated"

    # System Events
    SYSTEM_START = "system.start"


class EventSeverity(str, Enum):
    """
    Severity levels for vault events.

    - INFO: Normal activity (logged only)
    - INVESTIGATE: Something unusual, e.g. a failed unlock
    - ALERT: A write or restore failed
    - CRITICAL: Data may be lost
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for vault events.

    Features:
    - Structured JSON logging (structlog)
    - Automatic timestamp and event ID
    - Daily log files under `log_dir`
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        # Setup structured logging
        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_file_handler()

        self.logger = structlog.get_logger("twofa_vault.audit")

    def _setup_file_handler(self):
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        self.log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(self.log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))  # structlog handles formatting

        audit_logger = logging.getLogger("twofa_vault.audit")
        for handler in list(audit_logger.handlers):
            if isinstance(handler, logging.FileHandler):
                audit_logger.removeHandler(handler)
                handler.close()
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        user_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a vault event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (never secrets!)
            user_context: User context (os user, hostname, ...)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "user_context": user_context or self._get_default_user_context(),
        }

        self.logger.info("vault_event", **event_data)

        return event_id

    def log_vault_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> str:
        """Log a vault event with a "Vault: " message prefix."""
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=f"Vault: {message}",
            details=details
        )

    def _get_default_user_context(self) -> Dict[str, Any]:
        """Get default user context (OS user, hostname, etc.)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        from .config import load_config
        _audit_logger = AuditLogger(log_dir=load_config().log_dir)
    return _audit_logger


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging vault events.

    Usage:
        log_security_event(
            EventType.VAULT_UNLOCK_FAILED,
            EventSeverity.INVESTIGATE,
            "Unlock failed",
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
