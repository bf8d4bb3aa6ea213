"""Tests for the twofa-vault command line interface.

Each test runs main() in-process against a temp SQLite vault, with the
master password supplied through TWOFA_VAULT_PASSWORD.
"""

import json
import re
from types import SimpleNamespace

import pytest

from twofa_vault.__main__ import build_parser, main

PASSWORD = "correct horse battery"
SECRET = "JBSWY3DPEHPK3PXP"


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TWOFA_VAULT_DB", str(tmp_path / "vault.db"))
    monkeypatch.setenv("TWOFA_VAULT_PASSWORD", PASSWORD)
    monkeypatch.setenv("TWOFA_VAULT_ITERATIONS", "1000")
    monkeypatch.setenv("TWOFA_VAULT_PERSIST_DELAY_MS", "10")
    return tmp_path


def _run(capsys, *argv):
    code = main(list(argv))
    out, err = capsys.readouterr()
    return code, out, err


class TestParser:

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_add_options(self):
        args = build_parser().parse_args(
            ["add", "--issuer", "GitHub", "--secret", SECRET, "--tag", "a", "--tag", "b"]
        )
        assert args.tag == ["a", "b"]
        assert args.digits == 6


class TestCommands:

    def test_code_without_vault(self, cli_env, capsys):
        code, out, _ = _run(capsys, "code", SECRET, "--digits", "8")
        assert code == 0
        assert re.match(r"^\d{8}  \(expires in \d+s\)$", out.strip())
        assert not (cli_env / "vault.db").exists()

    def test_code_expiry_matches_printed_window(self, cli_env, capsys, monkeypatch):
        # 59.999s is the last instant of counter 1; a second clock read
        # would land in the next window
        readings = iter([59.999, 60.5])
        monkeypatch.setattr(
            "twofa_vault.__main__.time",
            SimpleNamespace(time=lambda: next(readings, 60.5)),
        )
        code, out, _ = _run(capsys, "code", "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ")
        assert code == 0
        assert out.strip() == "287082  (expires in 1s)"

    def test_init_add_list(self, cli_env, capsys):
        assert _run(capsys, "init")[0] == 0
        code, out, _ = _run(capsys, "add", "--issuer", "GitHub", "--label", "alice",
                            "--secret", SECRET, "--tag", "work")
        assert code == 0
        assert "Added GitHub / alice" in out

        code, out, _ = _run(capsys, "list", "--uri")
        assert code == 0
        assert "GitHub / alice  [work]" in out
        assert "otpauth://totp/GitHub%3Aalice?" in out
        assert "1 entries" in out

    def test_add_uri_and_codes(self, cli_env, capsys):
        uri = f"otpauth://totp/Bank:bob?secret={SECRET}&issuer=Bank"
        assert _run(capsys, "add-uri", uri)[0] == 0

        code, out, _ = _run(capsys, "codes", "--mark-used")
        assert code == 0
        assert re.search(r"\d{6}\s+\d+s  Bank / bob", out)

    def test_export_restore(self, cli_env, capsys):
        _run(capsys, "add", "--issuer", "GitHub", "--secret", SECRET)
        backup = cli_env / "backup.json"
        assert _run(capsys, "export", "-o", str(backup))[0] == 0
        assert set(json.loads(backup.read_text())) >= {"salt", "iv", "cipher"}

        _run(capsys, "add", "--issuer", "Later", "--secret", SECRET)
        code, out, _ = _run(capsys, "restore", str(backup))
        assert code == 0
        assert "Restored 1 entries" in out

    def test_wrong_password(self, cli_env, capsys, monkeypatch):
        _run(capsys, "init")
        monkeypatch.setenv("TWOFA_VAULT_PASSWORD", "wrong password")
        code, _, err = _run(capsys, "list")
        assert code == 1
        assert "Incorrect password" in err

    def test_invalid_secret(self, cli_env, capsys):
        code, _, err = _run(capsys, "add", "--issuer", "x", "--secret", "ABC1")
        assert code == 1
        assert "Invalid Base32 character" in err

    def test_clear(self, cli_env, capsys):
        _run(capsys, "add", "--issuer", "GitHub", "--secret", SECRET)
        assert _run(capsys, "clear", "--yes")[0] == 0
        code, out, _ = _run(capsys, "list")
        assert code == 0
        assert "0 entries" in out

    def test_calibrate(self, cli_env, capsys):
        code, out, _ = _run(capsys, "calibrate", "--target-ms", "0", "--max-iterations", "150000")
        assert code == 0
        assert out.startswith("150000 iterations")
