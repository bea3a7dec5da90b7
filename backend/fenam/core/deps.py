"""
Shared FastAPI dependencies.
"""
import hmac
import logging
import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.config import settings
from fenam.core.errors import ConfigurationError
from fenam.db.base import get_db
from fenam.models.affiliation import Affiliation
from fenam.services.affiliation import get_affiliation
from fenam.services.member_session import verify_member_session_token
from fenam.services.paypal import PayPalClient, get_paypal_client

logger = logging.getLogger(__name__)


def get_correlation_id(
    x_correlation_id: Optional[str] = Header(None),
    x_request_id: Optional[str] = Header(None),
) -> str:
    """Caller supplied id when present, otherwise a new one."""
    value = (x_correlation_id or x_request_id or "").strip()
    return value[:64] if value else uuid.uuid4().hex


async def require_admin(authorization: Optional[str] = Header(None)) -> None:
    """Bearer ADMIN_TOKEN check for the admin endpoints."""
    if not settings.ADMIN_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "admin_disabled", "message": "Admin access is not configured"}
        )

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "unauthorized", "message": "Missing bearer token"},
            headers={"WWW-Authenticate": "Bearer"},
        )
    if not hmac.compare_digest(token.strip().encode(), settings.ADMIN_TOKEN.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Invalid admin token"}
        )


def read_member_session(request: Request) -> Optional[dict]:
    """Verified session payload from the cookie, or None."""
    token = request.cookies.get(settings.MEMBER_SESSION_COOKIE)
    if not token:
        return None
    try:
        return verify_member_session_token(token)
    except ConfigurationError as e:
        logger.error(f"Member session secret misconfigured: {e}")
        return None


async def get_optional_member(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Optional[Affiliation]:
    session = read_member_session(request)
    if session is None:
        return None
    return await get_affiliation(db, session["affiliationId"])


async def get_current_member(
    member: Optional[Affiliation] = Depends(get_optional_member),
) -> Affiliation:
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "not_logged_in", "message": "Accesso socio richiesto"}
        )
    return member


def get_paypal() -> PayPalClient:
    try:
        return get_paypal_client()
    except ConfigurationError:
        logger.error("PayPal client not configured (missing client id/secret)")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "paypal_unavailable", "message": "PayPal non configurato. Contatta il supporto."}
        )
