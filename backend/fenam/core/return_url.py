"""
Return URL validation for partner redirects.

Only https URLs whose host is an allowlisted host (or a subdomain of one) are
accepted. The raw value is percent-decoded at most once.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union
from urllib.parse import unquote, urlsplit, urlunsplit

from fenam.core.config import settings

logger = logging.getLogger(__name__)

_FORBIDDEN_CHARS = ("\\", "\n", "\r", "\t", " ")


@dataclass(frozen=True)
class ReturnUrlResult:
    ok: bool
    return_url: Optional[str] = None
    reason: Optional[str] = None


def safe_decode_once(value: str) -> str:
    """Percent-decode once; malformed input is returned unchanged."""
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def normalize_host(host: Optional[str]) -> str:
    if not host:
        return ""
    return host.strip().lower().rstrip(".")


def parse_allowed_hosts(allowed: Union[str, Sequence[str], None]) -> list[str]:
    if allowed is None:
        allowed = settings.FENAM_ALLOWED_RETURN_HOSTS
    if isinstance(allowed, str):
        allowed = allowed.split(",")
    return [h for h in (normalize_host(h) for h in allowed) if h]


def host_allowed(hostname: str, allowed_hosts: Sequence[str]) -> bool:
    return any(hostname == h or hostname.endswith("." + h) for h in allowed_hosts)


def validate_return_url(
    raw: Optional[str],
    allowed_hosts: Union[str, Sequence[str], None] = None,
) -> ReturnUrlResult:
    if raw is None or not isinstance(raw, str):
        return ReturnUrlResult(False, reason="missing")
    trimmed = raw.strip()
    if not trimmed:
        return ReturnUrlResult(False, reason="empty")

    candidate = safe_decode_once(trimmed)
    if any(ch in candidate for ch in _FORBIDDEN_CHARS):
        return ReturnUrlResult(False, reason="invalid")
    if not candidate.lower().startswith("https://"):
        return ReturnUrlResult(False, reason="protocol")

    try:
        parts = urlsplit(candidate)
        hostname = normalize_host(parts.hostname)
        port = parts.port
    except ValueError:
        return ReturnUrlResult(False, reason="invalid")

    if parts.scheme.lower() != "https":
        return ReturnUrlResult(False, reason="protocol")
    if not hostname or parts.username or parts.password:
        return ReturnUrlResult(False, reason="host")

    hosts = parse_allowed_hosts(allowed_hosts)
    if not host_allowed(hostname, hosts):
        logger.info(f"Return URL host rejected: host={hostname} allowed={len(hosts)}")
        return ReturnUrlResult(False, reason="host_not_allowed")

    netloc = hostname if port is None else f"{hostname}:{port}"
    normalized = urlunsplit(("https", netloc, parts.path, parts.query, parts.fragment))
    if normalized.endswith("/"):
        normalized = normalized[:-1]
    return ReturnUrlResult(True, return_url=normalized)
