"""
Member session: a signed {affiliationId, exp} token kept in an httpOnly
cookie. Nothing is stored server side.
"""
import time
from typing import Any, Optional

from fastapi import Request, Response

from fenam.core.config import settings
from fenam.core.errors import ConfigurationError
from fenam.services import signed_token

MIN_SECRET_LENGTH = 16


def get_session_secret() -> str:
    secret = (settings.FENAM_MEMBER_SESSION_SECRET or settings.FENAM_HANDOFF_SECRET or "").strip()
    if len(secret) < MIN_SECRET_LENGTH:
        raise ConfigurationError(
            "FENAM_MEMBER_SESSION_SECRET (or FENAM_HANDOFF_SECRET) missing or shorter than "
            f"{MIN_SECRET_LENGTH} characters"
        )
    return secret


def session_max_age() -> int:
    return settings.MEMBER_SESSION_DAYS * 24 * 60 * 60


def create_member_session_token(affiliation_id: str, exp: Optional[int] = None) -> str:
    if exp is None:
        exp = int(time.time()) + session_max_age()
    return signed_token.sign({"affiliationId": affiliation_id, "exp": int(exp)}, get_session_secret())


def verify_member_session_token(token: Optional[str], now: Optional[float] = None) -> Optional[dict[str, Any]]:
    """Payload with affiliationId and a future exp, or None."""
    payload = signed_token.verify(token, get_session_secret(), now=now)
    if payload is None:
        return None
    # Session tokens must expire
    if not payload.get("exp") or not payload.get("affiliationId"):
        return None
    return {"affiliationId": payload["affiliationId"], "exp": payload["exp"]}


# ============================================================================
# Cookie helpers
# ============================================================================

def get_request_host(request: Request) -> Optional[str]:
    """X-Forwarded-Host (first hop) wins over Host."""
    forwarded = request.headers.get("x-forwarded-host")
    if forwarded:
        host = forwarded.split(",")[0].strip()
    else:
        host = request.headers.get("host")
    return host or None


def get_cookie_domain(host: Optional[str]) -> Optional[str]:
    """Shared parent domain for the production family, none elsewhere."""
    if not host:
        return None
    hostname = host.strip().lower().rstrip(".")
    # Drop the port
    hostname = hostname.split(":")[0]
    suffix = settings.COOKIE_DOMAIN_SUFFIX.lower()
    if hostname == suffix or hostname.endswith("." + suffix):
        return "." + suffix
    return None


def cookie_options(host: Optional[str] = None, clear: bool = False) -> dict[str, Any]:
    """Keyword arguments for Response.set_cookie."""
    options: dict[str, Any] = {
        "path": "/",
        "httponly": True,
        "secure": settings.is_production,
        "samesite": "lax",
        "max_age": 0 if clear else session_max_age(),
    }
    domain = get_cookie_domain(host)
    if domain:
        options["domain"] = domain
    return options


def set_session_cookie(response: Response, request: Request, token: str) -> None:
    response.set_cookie(
        settings.MEMBER_SESSION_COOKIE,
        token,
        **cookie_options(get_request_host(request)),
    )


def clear_session_cookie(response: Response, request: Request) -> None:
    response.set_cookie(
        settings.MEMBER_SESSION_COOKIE,
        "",
        **cookie_options(get_request_host(request), clear=True),
    )
