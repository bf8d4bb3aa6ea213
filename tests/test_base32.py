"""Tests for the Base32 codec (RFC 4648, unpadded).

Covers:
  - Known vectors (RFC 6238 seed, RFC 4648 test strings)
  - Separator and case tolerance on decode
  - Invalid characters / empty input
  - Random secret generation
"""

import pytest

from twofa_vault.vault.base32 import (
    ALPHABET,
    canonicalize,
    decode,
    encode,
    random_secret,
    sanitize,
)
from twofa_vault.vault.exceptions import InvalidEncoding, InvalidSecret, VaultError

RFC_SEED = b"12345678901234567890"
RFC_SEED_B32 = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


class TestEncode:

    def test_rfc_seed(self):
        assert encode(RFC_SEED) == RFC_SEED_B32

    @pytest.mark.parametrize("raw,expected", [
        (b"f", "MY"),
        (b"fo", "MZXQ"),
        (b"foo", "MZXW6"),
        (b"foob", "MZXW6YQ"),
        (b"fooba", "MZXW6YTB"),
        (b"foobar", "MZXW6YTBOI"),
    ])
    def test_rfc4648_vectors_without_padding(self, raw, expected):
        assert encode(raw) == expected

    def test_empty(self):
        assert encode(b"") == ""

    def test_never_pads(self):
        assert "=" not in encode(b"\x00\x01\x02\x03")


class TestDecode:

    def test_rfc_seed(self):
        assert decode(RFC_SEED_B32) == RFC_SEED

    def test_lowercase_and_separators(self):
        assert decode("gezd gnbv-gy3t qojq gezd gnbv gy3t qojq") == RFC_SEED

    def test_padding_ignored(self):
        assert decode("MZXW6YQ=") == b"foob"

    def test_partial_trailing_bits_discarded(self):
        # 'MY' carries 10 bits; only the first full byte is emitted
        assert decode("MY") == b"f"

    def test_empty_raises_invalid_secret(self):
        with pytest.raises(InvalidSecret):
            decode("")

    def test_bad_character_raises_invalid_encoding(self):
        with pytest.raises(InvalidEncoding, match="Invalid Base32 character: 1"):
            decode("ABC1")

    def test_errors_share_vault_base(self):
        with pytest.raises(VaultError):
            decode("!!!!")

    def test_round_trip_random_bytes(self):
        data = bytes(range(256))
        assert decode(encode(data)) == data


class TestNormalization:

    def test_sanitize_drops_everything_outside_alphabet(self):
        assert sanitize("ab c1-8=d") == "ABCD"

    def test_canonicalize_keeps_other_characters(self):
        assert canonicalize("ab c1-8=d") == "ABC18D"

    def test_none_is_empty(self):
        assert sanitize(None) == ""
        assert canonicalize(None) == ""


class TestRandomSecret:

    def test_default_length(self):
        assert len(random_secret()) == 32

    def test_custom_length(self):
        secret = random_secret(6)
        assert len(secret) == 6
        assert set(secret) <= set(ALPHABET)

    def test_values_differ(self):
        assert random_secret() != random_secret()
