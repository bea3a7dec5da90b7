"""
Magic link login for members.

A login request stores only the sha256 of a random secret and emails the
secret inside a verify link. Verification consumes the token with one
conditional UPDATE, so two concurrent verifications cannot both succeed.
"""
import hashlib
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
from urllib.parse import urlencode

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from fenam.core.config import settings
from fenam.core.errors import EmailDeliveryError, LoginRateLimitedError, NotActiveMemberError, ReturnUrlError
from fenam.core.return_url import validate_return_url
from fenam.models.affiliation import Affiliation
from fenam.models.base import utcnow
from fenam.models.member_login_token import MemberLoginToken
from fenam.services.affiliation import find_active_affiliation_by_email
from fenam.services.email import EmailService

logger = logging.getLogger(__name__)

DEFAULT_SOURCE = "fenam"
VERIFY_PATH = "/api/v1/member/login/verify"
RATE_WINDOW = timedelta(hours=1)
USER_AGENT_MAX_LENGTH = 500

LOGIN_REQUEST_MESSAGE = (
    "Se l'email è associata a un socio attivo, riceverai a breve un link di accesso."
)


def hash_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def normalize_source(source: Optional[str]) -> str:
    value = (source or "").strip().lower()
    return settings.PARTNER_SOURCE_TAG if value == settings.PARTNER_SOURCE_TAG else DEFAULT_SOURCE


def build_verify_url(raw_token: str) -> str:
    # Always the configured base URL, never the request host
    return f"{settings.BASE_URL.rstrip('/')}{VERIFY_PATH}?{urlencode({'token': raw_token})}"


@dataclass
class LoginRequestResult:
    token_id: str
    affiliation_id: str
    source: str
    expires_at: datetime


async def count_recent_tokens(db: AsyncSession, affiliation_id: str, now: datetime) -> int:
    result = await db.execute(
        select(func.count(MemberLoginToken.id)).where(
            MemberLoginToken.affiliation_id == affiliation_id,
            MemberLoginToken.created >= now - RATE_WINDOW,
        )
    )
    return result.scalar_one()


async def request_login(
    db: AsyncSession,
    email: str,
    email_service: EmailService,
    return_url: Optional[str] = None,
    source: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[datetime] = None,
) -> LoginRequestResult:
    """
    Create a login token for an active member and email the link.

    Raises:
        ReturnUrlError: partner source without a valid return URL
        NotActiveMemberError: no completed, unexpired affiliation for the email
        LoginRateLimitedError: too many tokens for this member in the last hour
        EmailDeliveryError: the link could not be sent
    """
    now = now or utcnow()
    src = normalize_source(source)

    validated_return_url = None
    if return_url is not None and return_url.strip():
        check = validate_return_url(return_url.strip())
        if check.ok:
            validated_return_url = check.return_url
        elif src != DEFAULT_SOURCE:
            raise ReturnUrlError("invalid_return_url")
    elif src != DEFAULT_SOURCE:
        raise ReturnUrlError("missing_return_url")

    affiliation = await find_active_affiliation_by_email(db, email, now=now)
    if affiliation is None:
        raise NotActiveMemberError("No active membership for this email")

    recent = await count_recent_tokens(db, affiliation.id, now)
    if recent >= settings.LOGIN_MAX_TOKENS_PER_HOUR:
        raise LoginRateLimitedError(int(RATE_WINDOW.total_seconds()))

    raw_token = secrets.token_urlsafe(32)
    token = MemberLoginToken(
        token_hash=hash_token(raw_token),
        affiliation_id=affiliation.id,
        expires_at=now + timedelta(minutes=settings.LOGIN_TOKEN_TTL_MINUTES),
        source=src,
        return_url=validated_return_url if src != DEFAULT_SOURCE else None,
        request_ip=request_ip,
        user_agent=(user_agent or "")[:USER_AGENT_MAX_LENGTH] or None,
        created=now,
    )
    db.add(token)
    await db.commit()

    logger.info(
        f"Login token {token.id} created: src={src} hasReturnUrl={token.return_url is not None}"
    )

    sent = await email_service.send_login_link(
        to=affiliation.email,
        verify_url=build_verify_url(raw_token),
        ttl_minutes=settings.LOGIN_TOKEN_TTL_MINUTES,
    )
    if not sent:
        raise EmailDeliveryError("Login link could not be sent")

    return LoginRequestResult(
        token_id=token.id,
        affiliation_id=affiliation.id,
        source=src,
        expires_at=token.expires_at,
    )


async def consume_login_token(
    db: AsyncSession,
    raw_token: str,
    now: Optional[datetime] = None,
) -> Optional[MemberLoginToken]:
    """
    Mark a login token used and return it with its affiliation.

    None when the token is unknown, already used or expired.
    """
    if not raw_token:
        return None
    now = now or utcnow()
    token_hash = hash_token(raw_token)

    result = await db.execute(
        update(MemberLoginToken)
        .where(
            MemberLoginToken.token_hash == token_hash,
            MemberLoginToken.used_at.is_(None),
            MemberLoginToken.expires_at > now,
        )
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.rollback()
        return None

    record = (await db.execute(
        select(MemberLoginToken)
        .where(MemberLoginToken.token_hash == token_hash)
        .options(selectinload(MemberLoginToken.affiliation))
        .execution_options(populate_existing=True)
    )).scalar_one()
    await db.commit()
    return record


def membership_active(affiliation: Optional[Affiliation], now: Optional[datetime] = None) -> bool:
    return affiliation is not None and affiliation.is_active(now)
