"""
Notifications that follow a completion: confirmation email and membership
card email.

Each one is skipped when its marker is already set, and the marker is only
written after the provider accepted the message. Failures become warnings;
nothing here raises or touches the completion fields.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.logging import log_error_structured
from fenam.models.affiliation import Affiliation, AffiliationSnapshot
from fenam.models.base import utcnow
from fenam.services.affiliation import get_affiliation
from fenam.services.email import EmailService, get_email_service
from fenam.services.membership_card import render_membership_card

logger = logging.getLogger(__name__)

CardRenderer = Callable[[AffiliationSnapshot], Awaitable[bytes]]


@dataclass
class SideEffectsResult:
    email_sent: bool = False
    card_sent: bool = False
    warnings: list[str] = field(default_factory=list)


async def _set_marker(db: AsyncSession, affiliation_id: str, column: str, when: datetime) -> None:
    await db.execute(
        update(Affiliation)
        .where(Affiliation.id == affiliation_id)
        .values({column: when})
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def _send_confirmation(
    db: AsyncSession,
    affiliation: AffiliationSnapshot,
    email_service: EmailService,
    amount: Optional[float],
    currency: str,
    result: SideEffectsResult,
) -> None:
    if affiliation.confirmation_email_sent_at is not None:
        result.email_sent = True
        return

    try:
        sent = await email_service.send_affiliation_confirmation(
            to=affiliation.email,
            first_name=affiliation.first_name,
            last_name=affiliation.last_name,
            order_id=affiliation.order_id,
            amount=amount,
            currency=currency,
        )
    except Exception as e:
        log_error_structured(logger, "Confirmation email failed", e, {"affiliationId": affiliation.id}, "EMAIL")
        sent = False

    if not sent:
        result.warnings.append("Email di conferma non inviata")
        return

    result.email_sent = True
    try:
        await _set_marker(db, affiliation.id, "confirmation_email_sent_at", utcnow())
    except Exception as e:
        await db.rollback()
        log_error_structured(logger, "Could not record confirmation email", e, {"affiliationId": affiliation.id}, "DB_CONN")
        result.warnings.append("Email di conferma inviata ma non registrata")


async def _send_card(
    db: AsyncSession,
    affiliation: AffiliationSnapshot,
    email_service: EmailService,
    card_renderer: CardRenderer,
    result: SideEffectsResult,
    force: bool,
) -> None:
    if affiliation.membership_card_sent_at is not None and not force:
        result.card_sent = True
        return

    if not affiliation.member_number:
        result.warnings.append("Tessera non inviata: numero socio mancante")
        return

    try:
        pdf = await card_renderer(affiliation)
        sent = await email_service.send_membership_card(
            to=affiliation.email,
            first_name=affiliation.first_name,
            last_name=affiliation.last_name,
            member_number=affiliation.member_number,
            member_since=affiliation.member_since,
            member_until=affiliation.member_until,
            pdf=pdf,
        )
    except Exception as e:
        log_error_structured(logger, "Membership card failed", e, {"affiliationId": affiliation.id}, "EMAIL")
        sent = False

    if not sent:
        result.warnings.append("Tessera socio non inviata")
        return

    result.card_sent = True
    try:
        await _set_marker(db, affiliation.id, "membership_card_sent_at", utcnow())
    except Exception as e:
        await db.rollback()
        log_error_structured(logger, "Could not record card email", e, {"affiliationId": affiliation.id}, "DB_CONN")
        result.warnings.append("Tessera inviata ma non registrata")


async def run_side_effects(
    db: AsyncSession,
    affiliation_id: str,
    amount: Optional[float] = None,
    currency: str = "EUR",
    email_service: Optional[EmailService] = None,
    card_renderer: Optional[CardRenderer] = None,
    force_card: bool = False,
) -> SideEffectsResult:
    """
    Send the confirmation email and the card of a completed affiliation.

    force_card resends the card even when it was sent before.
    """
    result = SideEffectsResult()
    email_service = email_service or get_email_service()
    card_renderer = card_renderer or render_membership_card

    try:
        affiliation = await get_affiliation(db, affiliation_id)
    except Exception as e:
        log_error_structured(logger, "Could not load affiliation for notifications", e, {"affiliationId": affiliation_id}, "DB_CONN")
        result.warnings.append("Affiliazione non leggibile, notifiche non inviate")
        return result

    if affiliation is None:
        result.warnings.append("Affiliazione non trovata, notifiche non inviate")
        return result
    if not affiliation.is_completed:
        result.warnings.append("Affiliazione non completata, notifiche non inviate")
        return result

    # A failed marker write rolls the session back and expires the row
    target = affiliation.snapshot()
    await _send_confirmation(db, target, email_service, amount, currency, result)
    await _send_card(db, target, email_service, card_renderer, result, force_card)

    logger.info(
        f"Notifications for {affiliation_id}: emailSent={result.email_sent} "
        f"cardSent={result.card_sent} warnings={len(result.warnings)}"
    )
    return result
