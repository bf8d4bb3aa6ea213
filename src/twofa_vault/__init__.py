# twofa-vault - Main Package
#
# Encrypted TOTP secret vault: RFC 4226/6238 code generation with
# secrets kept in a PBKDF2 + AES-256-GCM envelope at rest.

__version__ = "0.1.0"
__author__ = "twofa-vault Team"
__description__ = "Encrypted TOTP secret vault"

from .core import (
    EventSeverity,
    EventType,
    get_audit_logger,
    load_config,
)
from .vault import (
    EnvelopeService,
    TotpEngine,
    VaultEntry,
    VaultStore,
)

__all__ = [
    "__version__",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "load_config",
    "EnvelopeService",
    "TotpEngine",
    "VaultEntry",
    "VaultStore",
]
