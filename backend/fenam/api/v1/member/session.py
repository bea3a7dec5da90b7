"""
Endpoints for a member holding a session cookie.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import RedirectResponse
from urllib.parse import urlencode

from fenam.core.config import settings
from fenam.core.deps import get_current_member, get_optional_member
from fenam.core.errors import ConfigurationError
from fenam.core.return_url import validate_return_url
from fenam.models.affiliation import Affiliation
from fenam.schemas.member import MemberProfileResponse
from fenam.services.handoff import build_handoff_redirect, issue_handoff_token
from fenam.api.v1.member.login import (
    ERROR_INVALID_RETURN, ERROR_MEMBERSHIP_EXPIRED, login_page_redirect
)

logger = logging.getLogger(__name__)

router = APIRouter()


def member_to_response(affiliation: Affiliation) -> MemberProfileResponse:
    """Convert Affiliation model to the member profile schema."""
    return MemberProfileResponse(
        affiliationId=affiliation.id,
        firstName=affiliation.first_name,
        lastName=affiliation.last_name,
        memberNumber=affiliation.member_number,
        status=affiliation.status.value,
        active=affiliation.is_active(),
        memberSince=affiliation.member_since,
        memberUntil=affiliation.member_until,
    )


@router.get("/me", response_model=MemberProfileResponse)
async def get_me(member: Affiliation = Depends(get_current_member)):
    """Current member from the session cookie."""
    return member_to_response(member)


@router.get("/handoff", response_class=RedirectResponse)
async def session_handoff(
    returnUrl: Optional[str] = Query(None),
    source: Optional[str] = Query(None),
    member: Optional[Affiliation] = Depends(get_optional_member),
):
    """
    Send a logged-in member to the partner site with a fresh handoff token.

    Without a session the member is sent to the login page, keeping the
    return URL so the magic link can finish the trip.
    """
    check = validate_return_url(returnUrl)
    if not check.ok:
        return login_page_redirect(error=ERROR_INVALID_RETURN)

    src = (source or settings.PARTNER_SOURCE_TAG).strip().lower()[:32]

    if member is None:
        query = urlencode({"source": src, "returnUrl": check.return_url})
        return RedirectResponse(f"{settings.LOGIN_PAGE_PATH}?{query}", status_code=status.HTTP_302_FOUND)

    if not member.is_active():
        return login_page_redirect(error=ERROR_MEMBERSHIP_EXPIRED)

    try:
        token = issue_handoff_token(member, source=src)
    except ConfigurationError as e:
        logger.error(f"Handoff token not issued: {e}")
        return login_page_redirect(error=ERROR_INVALID_RETURN)

    logger.info(f"Session handoff for affiliation {member.id}")
    return RedirectResponse(build_handoff_redirect(check.return_url, token), status_code=status.HTTP_302_FOUND)
