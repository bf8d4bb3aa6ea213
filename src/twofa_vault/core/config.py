# Core - Configuration
#
# Settings come from environment variables, optionally seeded from a
# `.env` file in the working directory (python-dotenv). Real environment
# variables win over `.env` values.
#
#   TWOFA_VAULT_DB                   SQLite file holding the envelope
#   TWOFA_VAULT_LOG_DIR              audit log directory
#   TWOFA_VAULT_PERSIST_DELAY_MS     debounce delay for writes
#   TWOFA_VAULT_ITERATIONS           PBKDF2 iterations for new envelopes
#   TWOFA_VAULT_CALIBRATE_TARGET_MS  target cost for calibrate

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "data/vault.db"
DEFAULT_LOG_DIR = "./audit_logs"
DEFAULT_PERSIST_DELAY_MS = 250
DEFAULT_ITERATIONS = 600_000
DEFAULT_CALIBRATE_TARGET_MS = 250


@dataclass(frozen=True)
class VaultConfig:
    db_path: Path = Path(DEFAULT_DB_PATH)
    log_dir: Path = Path(DEFAULT_LOG_DIR)
    persist_delay_ms: int = DEFAULT_PERSIST_DELAY_MS
    iterations: int = DEFAULT_ITERATIONS
    calibrate_target_ms: int = DEFAULT_CALIBRATE_TARGET_MS


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return default
    if value < 0:
        logger.warning("Ignoring %s=%r: must not be negative", name, raw)
        return default
    return value


def load_config(env_file: Optional[str] = None) -> VaultConfig:
    """
    Build a VaultConfig from the environment.

    Args:
        env_file: Explicit .env path (default: search from the CWD)
    """
    load_dotenv(env_file or find_dotenv(usecwd=True), override=False)
    return VaultConfig(
        db_path=Path(os.environ.get("TWOFA_VAULT_DB") or DEFAULT_DB_PATH),
        log_dir=Path(os.environ.get("TWOFA_VAULT_LOG_DIR") or DEFAULT_LOG_DIR),
        persist_delay_ms=_env_int("TWOFA_VAULT_PERSIST_DELAY_MS", DEFAULT_PERSIST_DELAY_MS),
        iterations=_env_int("TWOFA_VAULT_ITERATIONS", DEFAULT_ITERATIONS) or DEFAULT_ITERATIONS,
        calibrate_target_ms=_env_int("TWOFA_VAULT_CALIBRATE_TARGET_MS", DEFAULT_CALIBRATE_TARGET_MS),
    )
