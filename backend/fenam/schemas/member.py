"""
Member area schemas.
"""
from typing import Optional
from datetime import datetime
from pydantic import BaseModel, EmailStr, field_validator


class LoginLinkRequest(BaseModel):
    """Ask for a magic link."""
    email: EmailStr
    returnUrl: Optional[str] = None
    source: Optional[str] = None

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class MemberProfileResponse(BaseModel):
    """The logged-in member."""
    affiliationId: str
    firstName: str
    lastName: str
    memberNumber: Optional[str] = None
    status: str
    active: bool
    memberSince: Optional[datetime] = None
    memberUntil: Optional[datetime] = None
