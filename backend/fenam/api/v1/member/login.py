"""
Member magic link endpoints.

The verify endpoint only redirects: the outcome is encoded in the target,
either the partner return URL, the login page with success=1, or the login
page with one of the error codes below.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.config import settings
from fenam.core.errors import (
    ConfigurationError, EmailDeliveryError, LoginRateLimitedError, NotActiveMemberError, ReturnUrlError
)
from fenam.core.rate_limit import get_client_ip, rate_limit
from fenam.core.return_url import validate_return_url
from fenam.db.base import get_db
from fenam.schemas.common import MessageResponse
from fenam.schemas.member import LoginLinkRequest
from fenam.services.email import EmailService, get_email_service
from fenam.services.handoff import build_handoff_redirect, issue_handoff_token
from fenam.services.member_login import (
    DEFAULT_SOURCE, LOGIN_REQUEST_MESSAGE, consume_login_token, membership_active, request_login
)
from fenam.services.member_session import clear_session_cookie, create_member_session_token, set_session_cookie

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_MISSING_TOKEN = "missing_token"
ERROR_INVALID_OR_USED = "invalid_or_used"
ERROR_MEMBERSHIP_EXPIRED = "membership_expired"
ERROR_INVALID_RETURN = "invalid_return"

RETURN_URL_MESSAGES = {
    "missing_return_url": "Per tornare su Enotempo è necessario fornire l'URL di ritorno.",
    "invalid_return_url": "Per tornare su Enotempo è necessario un URL di ritorno valido "
                          "(HTTPS e dominio consentito).",
}


def login_page_redirect(**params: str) -> RedirectResponse:
    query = "&".join(f"{key}={value}" for key, value in params.items())
    return RedirectResponse(f"{settings.LOGIN_PAGE_PATH}?{query}", status_code=status.HTTP_302_FOUND)


@router.post(
    "/login/request",
    response_model=MessageResponse,
    dependencies=[Depends(rate_limit(max_requests=5, window_seconds=3600))],
)
async def request_login_link(
    data: LoginLinkRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
):
    """Email a one-time login link to an active member."""
    try:
        await request_login(
            db,
            email=data.email,
            email_service=email_service,
            return_url=data.returnUrl,
            source=data.source,
            request_ip=get_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except ReturnUrlError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": e.reason, "message": RETURN_URL_MESSAGES[e.reason]}
        )
    except NotActiveMemberError:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "not_active_member",
                "message": "Nessuna tessera attiva trovata per questa email. "
                           "Verifica l'indirizzo o rinnova l'affiliazione.",
            }
        )
    except LoginRateLimitedError as e:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "too_many_requests",
                "message": "Hai già richiesto un link di accesso di recente. "
                           "Controlla la posta o riprova tra un'ora.",
                "retryAfter": e.retry_after,
            },
            headers={"Retry-After": str(e.retry_after)},
        )
    except EmailDeliveryError:
        logger.error("Login link email could not be sent")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "email_unavailable", "message": "Impossibile inviare l'email. Riprova più tardi."}
        )

    return MessageResponse(message=LOGIN_REQUEST_MESSAGE)


@router.get("/login/verify", response_class=RedirectResponse)
async def verify_login_link(
    request: Request,
    token: str = Query(""),
    db: AsyncSession = Depends(get_db),
):
    """Consume a magic link, open the member session and redirect."""
    token = token.strip()
    if not token:
        return login_page_redirect(error=ERROR_MISSING_TOKEN)

    record = await consume_login_token(db, token)
    if record is None:
        logger.warning("Login token invalid, expired or already used")
        return login_page_redirect(error=ERROR_INVALID_OR_USED)

    affiliation = record.affiliation
    active = membership_active(affiliation)
    logger.info(
        f"Login token {record.id} consumed: src={record.source} "
        f"hasReturnUrl={record.return_url is not None} active={active}"
    )
    if not active:
        return login_page_redirect(error=ERROR_MEMBERSHIP_EXPIRED)

    if record.source != DEFAULT_SOURCE:
        check = validate_return_url(record.return_url)
        if not check.ok:
            return login_page_redirect(error=ERROR_INVALID_RETURN)
        try:
            handoff_token = issue_handoff_token(affiliation, source=record.source)
        except ConfigurationError as e:
            logger.error(f"Handoff token not issued: {e}")
            handoff_token = None
        if handoff_token:
            response = RedirectResponse(
                build_handoff_redirect(check.return_url, handoff_token),
                status_code=status.HTTP_302_FOUND,
            )
        else:
            response = login_page_redirect(success="1")
    else:
        response = login_page_redirect(success="1")

    try:
        set_session_cookie(response, request, create_member_session_token(affiliation.id))
    except ConfigurationError as e:
        logger.warning(f"Member session not set: {e}")

    return response


@router.get("/logout", response_class=RedirectResponse)
async def logout(request: Request):
    """Clear the member session cookie."""
    response = login_page_redirect(loggedOut="1")
    clear_session_cookie(response, request)
    return response
