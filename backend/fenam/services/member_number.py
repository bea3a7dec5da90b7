"""
Member number generation.

Format: FENAM-<year>-<6 uppercase hex chars>, e.g. FENAM-2026-3FA91C.
The unique constraint on affiliations.member_number is the final authority;
this module only keeps collisions unlikely.
"""
import logging
import secrets
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.errors import MemberNumberExhaustedError
from fenam.models.affiliation import Affiliation

logger = logging.getLogger(__name__)

MEMBER_NUMBER_PREFIX = "FENAM"
DEFAULT_MAX_RETRIES = 5


def generate_member_number(now: Optional[datetime] = None) -> str:
    """Build a candidate member number. Pure, no I/O."""
    year = (now or datetime.now(timezone.utc)).year
    return f"{MEMBER_NUMBER_PREFIX}-{year:04d}-{secrets.token_hex(3).upper()}"


async def generate_unique_member_number(
    is_taken: Callable[[str], Awaitable[bool]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    generator: Callable[[], str] = generate_member_number,
) -> str:
    """
    Generate a candidate that ``is_taken`` reports as free.

    Raises MemberNumberExhaustedError after max_retries collisions.
    """
    for attempt in range(1, max_retries + 1):
        candidate = generator()
        if not await is_taken(candidate):
            return candidate
        logger.warning(f"Member number collision for {candidate}, attempt {attempt}/{max_retries}")
    raise MemberNumberExhaustedError(max_retries)


async def member_number_exists(db: AsyncSession, member_number: str) -> bool:
    result = await db.execute(
        select(Affiliation.id).where(Affiliation.member_number == member_number)
    )
    # No row means the number is free, even if a concurrent writer is about to take it
    return result.scalar_one_or_none() is not None


async def claim_member_number(db: AsyncSession, max_retries: int = DEFAULT_MAX_RETRIES) -> str:
    """Generate a member number that is not yet persisted."""
    async def is_taken(candidate: str) -> bool:
        return await member_number_exists(db, candidate)

    return await generate_unique_member_number(is_taken, max_retries=max_retries)
