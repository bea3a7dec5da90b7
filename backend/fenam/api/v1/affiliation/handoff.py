"""
Order based handoff: after checkout the site asks for a signed token to send
the new member back to the partner site.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.rate_limit import rate_limit
from fenam.core.return_url import validate_return_url
from fenam.db.base import get_db
from fenam.schemas.affiliation import HandoffRequest, HandoffResponse
from fenam.services.affiliation import get_affiliation_by_order
from fenam.services.handoff import build_handoff_redirect, handoff_configured, issue_handoff_token

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/handoff",
    response_model=HandoffResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit())],
)
async def create_order_handoff(
    data: HandoffRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Issue a handoff token for a completed order.

    Without a valid return URL the response carries no redirect and the
    client stays on the FENAM site.
    """
    if not handoff_configured():
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "handoff_unavailable", "message": "Handoff non configurato"}
        )

    affiliation = await get_affiliation_by_order(db, data.orderID.strip())
    if not affiliation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Affiliazione non trovata"}
        )
    if not affiliation.is_completed:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "not_completed",
                "message": "L'affiliazione deve essere completata per generare il token di handoff",
            }
        )

    check = validate_return_url(data.returnUrl)
    if not check.ok:
        logger.info(f"Handoff without redirect for affiliation {affiliation.id}: {check.reason}")
        return HandoffResponse(message="Nessun URL di return valido, usa redirect interno")

    source = (data.source or "").strip().lower()[:32] or None
    token = issue_handoff_token(affiliation, source=source)
    logger.info(f"Handoff token issued for affiliation {affiliation.id}")
    return HandoffResponse(redirectUrl=build_handoff_redirect(check.return_url, token), token=token)
