# Vault - otpauth:// Provisioning URIs
#
# otpauth://totp/{Issuer}:{label}?secret=...&issuer=...&algorithm=...&digits=...&period=...
#
# This is the format authenticator apps share through QR codes. Parsing
# returns a partial entry for VaultStore.add_entry; formatting builds the
# URI back from a stored entry.

from typing import Any, Dict
from urllib.parse import parse_qs, quote, unquote, urlencode, urlparse

from .exceptions import InvalidOtpauthUri
from .models import VaultEntry
from .provider import HashAlgorithm

SCHEME = "otpauth"
TOTP_TYPE = "totp"


def parse_otpauth_uri(uri: str) -> Dict[str, Any]:
    """
    Parse a TOTP provisioning URI into a partial entry.

    The issuer comes from the `issuer` query parameter, or failing that
    from an "Issuer:" prefix on the label.

    Raises:
        InvalidOtpauthUri: Not an otpauth URI, not TOTP, or no secret
    """
    parsed = urlparse((uri or "").strip())
    if parsed.scheme.lower() != SCHEME:
        raise InvalidOtpauthUri("Not an otpauth:// URI")
    if parsed.netloc.lower() != TOTP_TYPE:
        raise InvalidOtpauthUri(f"Unsupported OTP type: {parsed.netloc or 'missing'}")

    params = {key: values[0] for key, values in parse_qs(parsed.query).items() if values}
    secret = params.get("secret", "").strip()
    if not secret:
        raise InvalidOtpauthUri("otpauth URI has no secret")

    label = unquote(parsed.path.lstrip("/"))
    issuer = params.get("issuer", "").strip()
    if ":" in label:
        prefix, label = label.split(":", 1)
        issuer = issuer or prefix.strip()

    partial: Dict[str, Any] = {
        "secret": secret,
        "issuer": issuer,
        "label": label.strip(),
    }
    if "digits" in params:
        partial["digits"] = params["digits"]
    if "period" in params:
        partial["period"] = params["period"]
    if "algorithm" in params:
        partial["algorithm"] = params["algorithm"]
    return partial


def format_otpauth_uri(entry: VaultEntry) -> str:
    """Build the provisioning URI for an entry (label and issuer URL-encoded)."""
    label = quote(f"{entry.issuer}:{entry.label}", safe="")
    query = urlencode(
        {
            "secret": entry.secret,
            "issuer": entry.issuer,
            "algorithm": HashAlgorithm.parse(entry.algorithm).value.replace("-", ""),
            "digits": entry.digits,
            "period": entry.period,
        },
        quote_via=quote,
    )
    return f"{SCHEME}://{TOTP_TYPE}/{label}?{query}"
