"""
HMAC-signed tokens.

Format: base64url(payload_json) + "." + base64url(HMAC-SHA256(payload_b64, secret)),
both segments without padding. The payload JSON is serialized with keys
sorted at every level so the same logical payload always signs to the same
bytes.

verify() never raises for bad tokens; it returns None. A missing secret is a
configuration error and raises on both sign and verify.
"""
import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from typing import Any, Optional

from fenam.core.errors import MissingSecretError

SEPARATOR = "."


def stable_stringify(value: Any) -> str:
    """Deterministic compact JSON: dict keys sorted recursively."""
    if isinstance(value, dict):
        pairs = (
            f"{json.dumps(str(key), ensure_ascii=False)}:{stable_stringify(value[key])}"
            for key in sorted(value, key=str)
        )
        return "{" + ",".join(pairs) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(stable_stringify(item) for item in value) + "]"
    return json.dumps(value, ensure_ascii=False)


def b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _require_secret(secret: Optional[str]) -> bytes:
    if not secret:
        raise MissingSecretError("Signing secret is not configured")
    return secret.encode("utf-8")


def _signature(payload_b64: str, key: bytes) -> str:
    return b64url_encode(hmac.new(key, payload_b64.encode("ascii"), hashlib.sha256).digest())


def sign(payload: dict[str, Any], secret: Optional[str]) -> str:
    """Sign a payload, adding a jti nonce when the caller did not set one."""
    key = _require_secret(secret)
    claims = dict(payload)
    if "jti" not in claims or claims["jti"] is None:
        claims["jti"] = claims.get("nonce") or secrets.token_hex(16)

    payload_b64 = b64url_encode(stable_stringify(claims).encode("utf-8"))
    return f"{payload_b64}{SEPARATOR}{_signature(payload_b64, key)}"


def verify(token: Optional[str], secret: Optional[str], now: Optional[float] = None) -> Optional[dict[str, Any]]:
    """Return the payload of a valid, unexpired token, else None."""
    key = _require_secret(secret)
    if not token or not isinstance(token, str):
        return None

    parts = token.strip().split(SEPARATOR)
    if len(parts) != 2 or not parts[0] or not parts[1]:
        return None
    payload_b64, signature = parts

    try:
        expected = _signature(payload_b64, key).encode("ascii")
        provided = signature.encode("ascii")
        b64url_decode(signature)
    except (UnicodeEncodeError, binascii.Error, ValueError):
        return None

    if len(provided) != len(expected):
        return None
    if not hmac.compare_digest(provided, expected):
        return None

    try:
        payload = json.loads(b64url_decode(payload_b64).decode("utf-8"))
    except (UnicodeDecodeError, binascii.Error, ValueError):
        return None
    if not isinstance(payload, dict):
        return None

    exp = payload.get("exp")
    if exp is not None:
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            return None
        current = time.time() if now is None else now
        if exp < current:
            return None

    return payload
