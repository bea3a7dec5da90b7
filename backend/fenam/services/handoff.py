"""
Handoff tokens: short-lived assertions that a FENAM member is active,
consumed by partner sites (Enotempo) without a shared session store.

Stateless: no revocation, security comes from the signature, the short TTL
and the return URL allowlist.
"""
import time
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from fenam.core.config import settings
from fenam.models.affiliation import Affiliation
from fenam.services import signed_token


def handoff_subject(affiliation: Affiliation) -> str:
    """Member number when assigned, otherwise the internal id. Never the email."""
    return affiliation.member_number or affiliation.id


def issue_handoff_token(
    affiliation: Affiliation,
    source: Optional[str] = None,
    ttl_seconds: Optional[int] = None,
    secret: Optional[str] = None,
    now: Optional[int] = None,
) -> str:
    issued_at = int(time.time()) if now is None else int(now)
    ttl = settings.HANDOFF_TTL_SECONDS if ttl_seconds is None else ttl_seconds
    payload = {
        "sub": handoff_subject(affiliation),
        "src": source or settings.PARTNER_SOURCE_TAG,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    return signed_token.sign(payload, secret or settings.FENAM_HANDOFF_SECRET)


def verify_handoff_token(
    token: Optional[str],
    secret: Optional[str] = None,
    now: Optional[float] = None,
) -> Optional[dict[str, Any]]:
    payload = signed_token.verify(token, secret or settings.FENAM_HANDOFF_SECRET, now=now)
    if payload is None or not payload.get("sub"):
        return None
    return payload


def build_handoff_redirect(return_url: str, token: str) -> str:
    """Append status=success and the token to an already validated return URL."""
    parts = urlsplit(return_url)
    query = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key not in ("status", "token")
    ]
    query.extend([("status", "success"), ("token", token)])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def handoff_configured() -> bool:
    return bool(settings.FENAM_HANDOFF_SECRET and settings.FENAM_HANDOFF_SECRET.strip())
