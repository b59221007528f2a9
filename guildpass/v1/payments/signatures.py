import base64
import hashlib
import hmac
import re
from collections.abc import Mapping

SIGNATURE_HEADERS = ("x-sellapp-signature", "x-sellapp-hmac-sha256", "x-signature")

_HEX_RE = re.compile(r"^[a-f0-9]+$")


def read_signature(headers: Mapping[str, str]) -> str | None:
    """First non-blank signature header, in provider preference order."""
    for name in SIGNATURE_HEADERS:
        value = (headers.get(name) or "").strip()
        if value:
            return value
    return None


def _as_hex(candidate: str) -> str | None:
    value = candidate.strip().lower()
    if value.startswith("sha256="):
        value = value[len("sha256=") :]
    return value if value and _HEX_RE.match(value) else None


def verify_signature(secret: str, body: bytes, signature_header: str) -> bool:
    """
    Check an HMAC-SHA256 signature of the raw request body.

    The header may carry several comma-separated candidates, each either hex
    (optionally prefixed with ``sha256=``) or base64.
    """
    secret = secret.strip()
    if not secret:
        return False

    candidates = [part.strip() for part in signature_header.split(",") if part.strip()]
    if not candidates:
        return False

    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected_hex = digest.hex()
    expected_b64 = base64.b64encode(digest).decode("ascii")

    for candidate in candidates:
        as_hex = _as_hex(candidate)
        if as_hex and hmac.compare_digest(as_hex, expected_hex):
            return True
        if hmac.compare_digest(candidate.encode("utf-8"), expected_b64.encode("ascii")):
            return True
    return False


def sign_body(secret: str, body: bytes) -> str:
    """Hex signature for ``body``, as a provider would send it."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def payload_hash(body: bytes) -> str:
    return hashlib.sha256(body).hexdigest()
