# Core Module - Shared Utilities
#
# Core module provides shared functionality across twofa-vault modules:
# - Audit logging
# - Configuration

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
)
from .config import VaultConfig, load_config

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "log_security_event",
    # Configuration
    "VaultConfig",
    "load_config",
]
