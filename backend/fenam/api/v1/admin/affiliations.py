"""
Affiliation administration: search the register and resend membership cards.
"""
import logging
from math import ceil
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select, func, or_
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.rate_limit import rate_limit
from fenam.db.base import get_db
from fenam.models.affiliation import Affiliation, AffiliationStatus
from fenam.models.base import utcnow
from fenam.schemas.affiliation import (
    AffiliationAdminResponse, AffiliationListResponse, ResendCardResponse
)
from fenam.services.affiliation import get_affiliation
from fenam.services.email import EmailService, get_email_service
from fenam.services.membership_card import get_card_renderer
from fenam.services.side_effects import run_side_effects

logger = logging.getLogger(__name__)

router = APIRouter()


def affiliation_to_response(affiliation: Affiliation) -> AffiliationAdminResponse:
    """Convert Affiliation model to AffiliationAdminResponse schema."""
    return AffiliationAdminResponse(
        id=affiliation.id,
        order_id=affiliation.order_id,
        member_number=affiliation.member_number,
        first_name=affiliation.first_name,
        last_name=affiliation.last_name,
        email=affiliation.email,
        phone=affiliation.phone,
        payer_email=affiliation.payer_email,
        status=affiliation.status.value if isinstance(affiliation.status, AffiliationStatus) else affiliation.status,
        active=affiliation.is_active(),
        member_since=affiliation.member_since,
        member_until=affiliation.member_until,
        confirmation_email_sent_at=affiliation.confirmation_email_sent_at,
        membership_card_sent_at=affiliation.membership_card_sent_at,
        last_paypal_status=affiliation.last_paypal_status,
        last_paypal_checked_at=affiliation.last_paypal_checked_at,
        created=affiliation.created,
        updated=affiliation.updated,
    )


@router.get("/affiliations", response_model=AffiliationListResponse)
async def list_affiliations(
    page: int = Query(1, ge=1),
    perPage: int = Query(30, ge=1, le=500),
    status_filter: Optional[str] = Query(None, alias="status"),
    membership_filter: Optional[str] = Query(None, alias="membershipFilter"),
    q: Optional[str] = None,
    db: AsyncSession = Depends(get_db),
):
    """
    List affiliations, newest first.

    membershipFilter=active keeps completed records whose window is still
    open, membershipFilter=expired the completed ones past member_until.
    """
    query = select(Affiliation)

    if status_filter:
        try:
            query = query.where(Affiliation.status == AffiliationStatus(status_filter))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"error": "invalid_status", "message": f"Unknown status: {status_filter}"}
            )

    now = utcnow()
    if membership_filter == "active":
        query = query.where(
            Affiliation.status == AffiliationStatus.COMPLETED,
            Affiliation.member_until > now,
        )
    elif membership_filter == "expired":
        query = query.where(
            Affiliation.status == AffiliationStatus.COMPLETED,
            Affiliation.member_until <= now,
        )
    elif membership_filter:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_filter", "message": "membershipFilter must be active or expired"}
        )

    if q and q.strip():
        term = f"%{q.strip()}%"
        query = query.where(
            or_(
                Affiliation.email.ilike(term),
                Affiliation.first_name.ilike(term),
                Affiliation.last_name.ilike(term),
                Affiliation.order_id.ilike(term),
                Affiliation.member_number.ilike(term),
            )
        )

    count_query = select(func.count()).select_from(query.subquery())
    total_items = (await db.execute(count_query)).scalar() or 0

    query = query.order_by(Affiliation.created.desc(), Affiliation.id.desc())
    query = query.offset((page - 1) * perPage).limit(perPage)

    result = await db.execute(query)
    items = [affiliation_to_response(a) for a in result.scalars().all()]

    return AffiliationListResponse(
        page=page,
        perPage=perPage,
        totalItems=total_items,
        totalPages=ceil(total_items / perPage) if total_items > 0 else 1,
        items=items
    )


@router.get("/affiliations/{affiliation_id}", response_model=AffiliationAdminResponse)
async def get_affiliation_detail(
    affiliation_id: str,
    db: AsyncSession = Depends(get_db),
):
    affiliation = await get_affiliation(db, affiliation_id)
    if not affiliation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Affiliazione non trovata"}
        )
    return affiliation_to_response(affiliation)


@router.post(
    "/affiliations/{affiliation_id}/resend-card",
    response_model=ResendCardResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit(max_requests=5, window_seconds=60))],
)
async def resend_card(
    affiliation_id: str,
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
    card_renderer=Depends(get_card_renderer),
):
    """
    Send the membership card again.

    Only completed affiliations with a member number qualify. The
    confirmation email is not repeated when its marker is set.
    """
    affiliation = await get_affiliation(db, affiliation_id)
    if not affiliation:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": "Affiliazione non trovata"}
        )
    if not affiliation.is_completed or not affiliation.member_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "not_completed", "message": "Affiliazione non completata o senza numero socio"}
        )

    member_number = affiliation.member_number
    logger.info(f"Admin resend of card for affiliation {affiliation_id}")
    result = await run_side_effects(
        db,
        affiliation_id,
        email_service=email_service,
        card_renderer=card_renderer,
        force_card=True,
    )

    return ResendCardResponse(
        ok=result.card_sent,
        cardSent=result.card_sent,
        memberNumber=member_number,
        warnings=result.warnings or None,
    )
