"""
Affiliation order endpoints: open a PayPal order, or affiliate for free.
"""
import logging
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.config import settings
from fenam.core.deps import get_correlation_id, get_paypal
from fenam.core.errors import FenamError, PaymentProviderError
from fenam.core.logging import log_error_structured, mask_email
from fenam.core.rate_limit import rate_limit
from fenam.db.base import get_db
from fenam.schemas.affiliation import (
    OrderCreate, OrderCreateResponse, FreeAffiliationCreate, FreeAffiliationResponse
)
from fenam.services.affiliation import create_pending_affiliation, mark_completed
from fenam.services.email import EmailService, get_email_service
from fenam.services.membership_card import get_card_renderer
from fenam.services.paypal import PayPalClient
from fenam.services.side_effects import run_side_effects

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post(
    "/orders",
    response_model=OrderCreateResponse,
    dependencies=[Depends(rate_limit())],
)
async def create_order(
    data: OrderCreate,
    db: AsyncSession = Depends(get_db),
    paypal: PayPalClient = Depends(get_paypal),
    correlation_id: str = Depends(get_correlation_id),
):
    """
    Store a pending affiliation and open the matching PayPal order.

    The affiliation id travels as the order custom_id.
    """
    if data.amount < settings.MIN_DONATION_AMOUNT:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_amount", "message": f"Importo minimo {settings.MIN_DONATION_AMOUNT:g}€"}
        )

    affiliation = await create_pending_affiliation(
        db,
        first_name=data.first_name,
        last_name=data.last_name,
        email=data.email,
        phone=data.phone,
        privacy=data.privacy,
    )

    try:
        order = await paypal.create_order(data.amount, data.currency, custom_id=affiliation.id)
    except PaymentProviderError as e:
        log_error_structured(
            logger, "PayPal order creation failed", e,
            {"affiliationId": affiliation.id, "correlationId": correlation_id, "debugId": e.debug_id},
            "PAYPAL_API",
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": "paypal_error", "message": "Errore durante la creazione dell'ordine", "correlationId": correlation_id}
        )

    affiliation.order_id = order["id"]
    await db.commit()

    logger.info(f"PayPal order {order['id']} opened for affiliation {affiliation.id} ({correlation_id})")
    return OrderCreateResponse(orderID=order["id"], affiliationId=affiliation.id)


@router.post(
    "/free",
    response_model=FreeAffiliationResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit())],
)
async def create_free_affiliation(
    data: FreeAffiliationCreate,
    db: AsyncSession = Depends(get_db),
    email_service: EmailService = Depends(get_email_service),
    card_renderer=Depends(get_card_renderer),
    correlation_id: str = Depends(get_correlation_id),
):
    """Affiliation without donation. Disabled in production unless ALLOW_FREE_AFFILIATION."""
    if settings.is_production and not settings.ALLOW_FREE_AFFILIATION:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"error": "forbidden", "message": "Free affiliation disabled"}
        )

    try:
        affiliation = await create_pending_affiliation(
            db,
            first_name=data.first_name,
            last_name=data.last_name,
            email=data.email,
            phone=data.phone,
            privacy=data.privacy,
        )
        affiliation_id = affiliation.id
        completion = await mark_completed(db, affiliation_id, correlation_id=correlation_id)
    except (FenamError, SQLAlchemyError) as e:
        log_error_structured(
            logger, "Free affiliation failed", e,
            {"correlationId": correlation_id, "email": mask_email(data.email)},
            "DB_CONN",
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "internal_error", "message": "Errore durante l'affiliazione gratuita.", "correlationId": correlation_id}
        )

    notifications = await run_side_effects(
        db, affiliation_id, amount=0, currency=settings.DEFAULT_CURRENCY,
        email_service=email_service, card_renderer=card_renderer,
    )

    logger.info(
        f"Free affiliation {affiliation_id} completed as {completion.member_number} "
        f"for {mask_email(data.email)} ({correlation_id})"
    )
    return FreeAffiliationResponse(
        correlationId=correlation_id,
        memberNumber=completion.member_number,
        emailSent=notifications.email_sent,
        cardSent=notifications.card_sent,
        warnings=notifications.warnings or None,
    )
