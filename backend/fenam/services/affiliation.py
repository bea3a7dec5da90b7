"""
Affiliation completion.

mark_completed() moves an affiliation from pending to completed exactly once:
it derives the validity window (new member, active renewal or lapsed
renewal), assigns a member number and writes everything with a single
conditional UPDATE. Concurrent callers race on that UPDATE; the first one
wins and the others return what it persisted.

Notifications are not sent here, see fenam.services.side_effects.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.errors import AffiliationNotFoundError, CompletionPersistenceError
from fenam.core.logging import log_error_structured, mask_email
from fenam.models.affiliation import Affiliation, AffiliationStatus
from fenam.models.base import utcnow
from fenam.services.member_number import claim_member_number

logger = logging.getLogger(__name__)

RECOVERY_PLACEHOLDER = "N/D"


@dataclass
class CompletionResult:
    affiliation_id: str
    member_number: str
    member_since: datetime
    member_until: datetime
    already_completed: bool = False
    is_renewal: bool = False


@dataclass
class MembershipWindow:
    member_since: datetime
    member_until: datetime
    is_renewal: bool = False


def add_one_year(value: datetime) -> datetime:
    """Calendar-year increment. Feb 29 maps to Feb 28 of the next year."""
    return value + relativedelta(years=1)


def derive_membership_window(basis: Optional[Affiliation], now: datetime) -> MembershipWindow:
    """
    Validity window for a completion.

    Active basis: extend its member_until by a year, keep its member_since.
    Lapsed basis or none: start today.
    """
    if basis is not None and basis.member_until is not None:
        if basis.member_until > now:
            return MembershipWindow(
                member_since=basis.member_since or now,
                member_until=add_one_year(basis.member_until),
                is_renewal=True,
            )
        return MembershipWindow(member_since=now, member_until=add_one_year(now), is_renewal=True)
    return MembershipWindow(member_since=now, member_until=add_one_year(now))


def _fully_completed(affiliation: Affiliation) -> bool:
    return (
        affiliation.status == AffiliationStatus.COMPLETED and
        affiliation.member_number is not None and
        affiliation.member_since is not None and
        affiliation.member_until is not None
    )


def _result_from(affiliation: Affiliation, already_completed: bool, is_renewal: bool = False) -> CompletionResult:
    return CompletionResult(
        affiliation_id=affiliation.id,
        member_number=affiliation.member_number,
        member_since=affiliation.member_since,
        member_until=affiliation.member_until,
        already_completed=already_completed,
        is_renewal=is_renewal,
    )


async def get_affiliation(db: AsyncSession, affiliation_id: str) -> Optional[Affiliation]:
    """Fresh read, bypassing whatever the session already holds."""
    result = await db.execute(
        select(Affiliation)
        .where(Affiliation.id == affiliation_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_affiliation_by_order(db: AsyncSession, order_id: str) -> Optional[Affiliation]:
    result = await db.execute(
        select(Affiliation)
        .where(Affiliation.order_id == order_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def find_renewal_basis(
    db: AsyncSession,
    affiliation: Affiliation,
    payer_email: Optional[str] = None,
) -> Optional[Affiliation]:
    """Most recent other completed affiliation sharing the payer or profile email."""
    emails = {e.strip().lower() for e in (payer_email, affiliation.email) if e and e.strip()}
    if not emails:
        return None

    result = await db.execute(
        select(Affiliation)
        .where(
            Affiliation.id != affiliation.id,
            Affiliation.status == AffiliationStatus.COMPLETED,
            Affiliation.member_until.is_not(None),
            or_(Affiliation.email.in_(emails), Affiliation.payer_email.in_(emails)),
        )
        .order_by(Affiliation.member_until.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def find_active_affiliation_by_email(
    db: AsyncSession,
    email: str,
    now: Optional[datetime] = None,
) -> Optional[Affiliation]:
    now = now or utcnow()
    result = await db.execute(
        select(Affiliation)
        .where(
            Affiliation.email == email.strip().lower(),
            Affiliation.status == AffiliationStatus.COMPLETED,
            Affiliation.member_until > now,
        )
        .order_by(Affiliation.member_until.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def mark_completed(
    db: AsyncSession,
    affiliation_id: str,
    payer_email: Optional[str] = None,
    correlation_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CompletionResult:
    """
    Complete an affiliation, idempotently.

    Raises:
        AffiliationNotFoundError: no affiliation with this id
        MemberNumberExhaustedError: no free member number could be generated
        CompletionPersistenceError: the completion write failed
    """
    now = now or utcnow()
    log_context = {"affiliationId": affiliation_id, "correlationId": correlation_id}

    affiliation = await get_affiliation(db, affiliation_id)
    if affiliation is None:
        raise AffiliationNotFoundError(affiliation_id)

    if _fully_completed(affiliation):
        logger.info(f"Affiliation already completed, nothing to write {log_context}")
        return _result_from(affiliation, already_completed=True)

    if affiliation.status == AffiliationStatus.COMPLETED:
        logger.warning(f"Affiliation marked completed with missing fields, completing them {log_context}")

    basis = await find_renewal_basis(db, affiliation, payer_email)
    window = derive_membership_window(basis, now)
    if window.is_renewal:
        logger.info(
            f"Renewal of {basis.id}: membership until {window.member_until.date().isoformat()} {log_context}"
        )

    candidate = affiliation.member_number or await claim_member_number(db)

    values = {
        "status": AffiliationStatus.COMPLETED,
        "member_since": window.member_since,
        "member_until": window.member_until,
        # Never replace a number that is already assigned
        "member_number": func.coalesce(Affiliation.member_number, candidate),
        "updated": now,
    }
    normalized_payer = payer_email.strip().lower() if payer_email else None
    if normalized_payer and normalized_payer != (affiliation.email or "").lower():
        values["payer_email"] = normalized_payer

    stmt = (
        update(Affiliation)
        .where(
            Affiliation.id == affiliation_id,
            or_(
                Affiliation.status != AffiliationStatus.COMPLETED,
                Affiliation.member_number.is_(None),
                Affiliation.member_since.is_(None),
                Affiliation.member_until.is_(None),
            ),
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    try:
        result = await db.execute(stmt)
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        log_error_structured(logger, "Completion write hit a unique constraint", e, log_context, "DB_CONN")
        raise CompletionPersistenceError(affiliation_id, CompletionPersistenceError.UNIQUE_VIOLATION, e) from e
    except SQLAlchemyError as e:
        await db.rollback()
        log_error_structured(logger, "Completion write failed", e, log_context, "DB_CONN")
        raise CompletionPersistenceError(affiliation_id, CompletionPersistenceError.OTHER, e) from e

    if result.rowcount == 0:
        # Another caller completed it first, or the row is gone
        current = await get_affiliation(db, affiliation_id)
        if current is None:
            raise CompletionPersistenceError(affiliation_id, CompletionPersistenceError.RECORD_VANISHED)
        logger.info(f"Affiliation completed concurrently, returning persisted values {log_context}")
        return _result_from(current, already_completed=True)

    await db.refresh(affiliation)
    logger.info(f"Affiliation completed with member number {affiliation.member_number} {log_context}")
    return _result_from(affiliation, already_completed=False, is_renewal=window.is_renewal)


async def record_paypal_diagnostic(
    db: AsyncSession,
    affiliation_id: str,
    paypal_status: str,
    now: Optional[datetime] = None,
) -> bool:
    """Best-effort breadcrumb of the last provider status seen. Never raises."""
    try:
        await db.execute(
            update(Affiliation)
            .where(Affiliation.id == affiliation_id)
            .values(last_paypal_status=paypal_status[:32], last_paypal_checked_at=now or utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return True
    except SQLAlchemyError as e:
        await db.rollback()
        logger.warning(f"Could not record PayPal status for affiliation {affiliation_id}: {e}")
        return False


async def create_pending_affiliation(
    db: AsyncSession,
    first_name: str,
    last_name: str,
    email: str,
    phone: str,
    privacy: bool,
    order_id: Optional[str] = None,
) -> Affiliation:
    affiliation = Affiliation(
        first_name=first_name.strip(),
        last_name=last_name.strip(),
        email=email.strip().lower(),
        phone=phone.strip(),
        privacy=privacy,
        order_id=order_id,
        status=AffiliationStatus.PENDING,
    )
    db.add(affiliation)
    await db.commit()
    await db.refresh(affiliation)
    logger.info(f"Pending affiliation {affiliation.id} created for {mask_email(affiliation.email)}")
    return affiliation


def _recovery_text(value: Optional[str], limit: int, minimum: int = 2) -> str:
    if value and len(value.strip()) >= minimum:
        return value.strip()[:limit]
    return RECOVERY_PLACEHOLDER


def _looks_like_email(value: Optional[str]) -> bool:
    return bool(value) and len(value.strip()) >= 5 and "@" in value


async def recover_affiliation(
    db: AsyncSession,
    order_id: str,
    payer_email: Optional[str] = None,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
    phone: Optional[str] = None,
    privacy: Optional[bool] = None,
    paypal_status: str = "COMPLETED",
) -> Affiliation:
    """
    Recreate the pending record of an order that was paid but is unknown here.

    A concurrent capture of the same order may insert it first; in that case
    the existing row is returned.
    """
    if _looks_like_email(email):
        recovered_email = email.strip().lower()
    else:
        recovered_email = payer_email or RECOVERY_PLACEHOLDER

    affiliation = Affiliation(
        order_id=order_id,
        first_name=_recovery_text(first_name, 80),
        last_name=_recovery_text(last_name, 80),
        email=recovered_email,
        phone=_recovery_text(phone, 25, minimum=1),
        privacy=privacy is not False,
        status=AffiliationStatus.PENDING,
        last_paypal_status=paypal_status,
        last_paypal_checked_at=utcnow(),
    )
    db.add(affiliation)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await get_affiliation_by_order(db, order_id)
        if existing is None:
            raise
        return existing

    await db.refresh(affiliation)
    logger.warning(f"Affiliation {affiliation.id} recovered from captured order {order_id}")
    return affiliation
