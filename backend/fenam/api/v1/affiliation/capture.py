"""
PayPal capture endpoint.

capture (or re-fetch when already captured) -> breadcrumb -> find or recover
the affiliation -> mark_completed -> notifications. Safe to call again for the
same order: a completed affiliation answers with already_completed.
"""
import logging
from typing import Optional, Union
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.config import settings
from fenam.core.deps import get_correlation_id, get_paypal
from fenam.core.errors import FenamError, PaymentProviderError
from fenam.core.logging import log_error_structured
from fenam.core.rate_limit import rate_limit
from fenam.db.base import get_db
from fenam.schemas.affiliation import CaptureRequest, CaptureResponse, CapturePendingResponse
from fenam.services.affiliation import (
    get_affiliation_by_order, mark_completed, record_paypal_diagnostic, recover_affiliation
)
from fenam.services.email import EmailService, get_email_service
from fenam.services.membership_card import get_card_renderer
from fenam.services.paypal import PayPalClient, extract_capture_details
from fenam.services.side_effects import run_side_effects

logger = logging.getLogger(__name__)

router = APIRouter()

PAYPAL_COMPLETED = "COMPLETED"


def _parse_amount(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _persistence_failure(order_id: str, correlation_id: str) -> HTTPException:
    # Payment went through: the message must not say otherwise
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "database_error",
            "message": "Pagamento completato ma errore durante aggiornamento database. "
                       "Contatta il supporto con l'ID ordine.",
            "orderID": order_id,
            "correlationId": correlation_id,
        }
    )


@router.post(
    "/capture",
    response_model=Union[CaptureResponse, CapturePendingResponse],
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit())],
)
async def capture_order(
    data: CaptureRequest,
    db: AsyncSession = Depends(get_db),
    paypal: PayPalClient = Depends(get_paypal),
    email_service: EmailService = Depends(get_email_service),
    card_renderer=Depends(get_card_renderer),
    correlation_id: str = Depends(get_correlation_id),
):
    """Capture a PayPal order and complete its affiliation."""
    order_id = data.orderID
    log_context = {"orderID": order_id, "correlationId": correlation_id}
    logger.info(f"Capture requested {log_context} paypal={paypal.mode}")

    # Step 1: capture, or GET when it was captured before
    try:
        order = await paypal.capture_or_fetch(order_id)
    except PaymentProviderError as e:
        log_error_structured(
            logger, "PayPal capture failed", e,
            {**log_context, "statusCode": e.status_code, "debugId": e.debug_id},
            "PAYPAL_API",
        )
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "error": "paypal_error",
                "message": "Errore durante il processamento del pagamento PayPal.",
                "orderID": order_id,
                "correlationId": correlation_id,
            }
        )

    details = extract_capture_details(order)
    logger.info(f"PayPal status {details.status} {log_context}")

    existing = await get_affiliation_by_order(db, order_id)
    if existing is not None:
        if not await record_paypal_diagnostic(db, existing.id, details.status):
            # The failed breadcrumb write rolled back and expired the row
            existing = await get_affiliation_by_order(db, order_id)

    if details.status != PAYPAL_COMPLETED:
        logger.warning(f"Payment not completed yet: {details.status} {log_context}")
        return CapturePendingResponse(
            paypalStatus=details.status,
            correlationId=correlation_id,
            message=f"Pagamento non completato: stato = {details.status}. "
                    "Se hai appena pagato, riprova tra qualche minuto.",
        )

    amount = _parse_amount(details.amount)
    if amount is not None and amount < settings.MIN_DONATION_AMOUNT:
        logger.warning(f"Captured amount below minimum: {details.amount} {log_context}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_amount", "message": f"Importo minimo {settings.MIN_DONATION_AMOUNT:g}€"}
        )

    # Step 2: the pending record, recreated if it went missing
    affiliation = existing
    if affiliation is None:
        try:
            affiliation = await recover_affiliation(
                db,
                order_id,
                payer_email=details.payer_email,
                first_name=data.first_name,
                last_name=data.last_name,
                email=data.email,
                phone=data.phone,
                privacy=data.privacy,
                paypal_status=details.status,
            )
        except SQLAlchemyError as e:
            log_error_structured(logger, "Affiliation recovery failed", e, log_context, "DB_CONN")
            raise _persistence_failure(order_id, correlation_id)

    if affiliation.is_completed and affiliation.member_number:
        logger.info(f"Affiliation {affiliation.id} already completed {log_context}")
        return CaptureResponse(
            status="completed",
            already_completed=True,
            orderID=order_id,
            memberNumber=affiliation.member_number,
            emailSent=affiliation.confirmation_email_sent_at is not None,
            cardSent=affiliation.membership_card_sent_at is not None,
            correlationId=correlation_id,
        )

    # A failed write rolls the session back and expires loaded rows
    affiliation_id = affiliation.id

    # Step 3: the completion write
    try:
        completion = await mark_completed(
            db,
            affiliation_id,
            payer_email=details.payer_email,
            correlation_id=correlation_id,
        )
    except (FenamError, SQLAlchemyError) as e:
        log_error_structured(
            logger, "CRITICAL: completion failed after PayPal COMPLETED", e,
            {**log_context, "affiliationId": affiliation_id, "kind": getattr(e, "kind", None)},
            "DB_CONN",
        )
        await record_paypal_diagnostic(db, affiliation_id, PAYPAL_COMPLETED)
        raise _persistence_failure(order_id, correlation_id)

    # Step 4: notifications, never blocking
    notifications = await run_side_effects(
        db,
        affiliation_id,
        amount=amount,
        currency=details.currency or settings.DEFAULT_CURRENCY,
        email_service=email_service,
        card_renderer=card_renderer,
    )

    return CaptureResponse(
        status=PAYPAL_COMPLETED,
        orderID=order_id,
        captureId=details.capture_id,
        amount=details.amount,
        currency=details.currency,
        memberNumber=completion.member_number,
        emailSent=notifications.email_sent,
        cardSent=notifications.card_sent,
        correlationId=correlation_id,
        already_completed=True if completion.already_completed else None,
        warnings=notifications.warnings or None,
    )
