"""
Public membership card check.
"""
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from fenam.core.rate_limit import rate_limit
from fenam.db.base import get_db
from fenam.models.affiliation import Affiliation
from fenam.schemas.affiliation import MembershipVerifyResponse

router = APIRouter()


@router.get(
    "/membership/verify",
    response_model=MembershipVerifyResponse,
    tags=["membership"],
    dependencies=[Depends(rate_limit())],
)
async def verify_membership(
    memberNumber: str = Query(""),
    db: AsyncSession = Depends(get_db),
):
    """
    Check a card by member number.

    Unknown numbers answer found=false. No personal data is returned.
    """
    member_number = memberNumber.strip().upper()
    if not member_number:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_member_number", "message": "memberNumber obbligatorio"}
        )

    result = await db.execute(
        select(Affiliation).where(Affiliation.member_number == member_number)
    )
    affiliation = result.scalar_one_or_none()
    if affiliation is None:
        return MembershipVerifyResponse(found=False)

    return MembershipVerifyResponse(
        found=True,
        status=affiliation.status.value,
        active=affiliation.is_active(),
        memberSince=affiliation.member_since,
        memberUntil=affiliation.member_until,
    )
