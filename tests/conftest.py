"""
Shared pytest fixtures for the twofa-vault test suite.

Autouse fixtures below isolate tests from live application data:
  - Audit logger -> temp directory (keeps test events out of ./audit_logs)
  - Code engine  -> fresh singleton (no cache state shared between tests)
"""

import pytest


@pytest.fixture(autouse=True)
def _isolate_audit_logs(tmp_path, monkeypatch):
    """Redirect the global AuditLogger to a temp directory for every test.

    Without this, any test that (directly or indirectly) calls
    ``get_audit_logger().log_event(...)`` writes into the real
    ``./audit_logs/`` directory.
    """
    import twofa_vault.core.audit_log as audit_mod

    # Reset the singleton so the next call to get_audit_logger() creates
    # a fresh instance pointing at the temp directory.
    old_logger = audit_mod._audit_logger
    audit_mod._audit_logger = None

    # get_audit_logger() takes its directory from config, which reads
    # the environment before any .env file.
    monkeypatch.setenv("TWOFA_VAULT_LOG_DIR", str(tmp_path / "audit_logs"))

    yield

    audit_mod._audit_logger = old_logger


@pytest.fixture(autouse=True)
def _isolate_totp_engine():
    """Give every test a fresh global TotpEngine."""
    import twofa_vault.vault.totp as totp_mod

    old_engine = totp_mod._engine
    totp_mod._engine = None

    yield

    totp_mod._engine = old_engine


@pytest.fixture
def fast_envelope_service():
    """EnvelopeService with a low iteration count so tests stay quick."""
    from twofa_vault.vault import EnvelopeService

    return EnvelopeService(iterations=1000)
