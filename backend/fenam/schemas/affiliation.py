"""
Affiliation schemas.

Response field names follow the public JSON contract used by the site
(orderID, memberNumber, emailSent, ...).
"""
from typing import Optional, List
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field, field_validator


class AffiliationBase(BaseModel):
    """Profile fields collected by the affiliation form."""
    first_name: str = Field(..., min_length=2, max_length=80)
    last_name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr
    phone: str = Field(..., min_length=6, max_length=25)
    privacy: bool

    @field_validator("first_name", "last_name", "phone", mode="before")
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("privacy")
    @classmethod
    def privacy_required(cls, v: bool) -> bool:
        if v is not True:
            raise ValueError("Consenso privacy obbligatorio")
        return v


class OrderCreate(AffiliationBase):
    """Open a PayPal order for a new affiliation."""
    amount: float = Field(..., gt=0)
    currency: str = "EUR"


class OrderCreateResponse(BaseModel):
    orderID: str
    affiliationId: str


class FreeAffiliationCreate(AffiliationBase):
    """Affiliation without donation."""
    amount: float = 0

    @field_validator("amount")
    @classmethod
    def zero_only(cls, v: float) -> float:
        if v != 0:
            raise ValueError("Questo endpoint accetta solo donazione = 0")
        return v


class FreeAffiliationResponse(BaseModel):
    ok: bool = True
    correlationId: str
    memberNumber: str
    emailSent: bool
    cardSent: bool
    warnings: Optional[List[str]] = None


class CaptureRequest(BaseModel):
    """
    Capture a PayPal order.

    Profile fields are only used to recreate a missing pending record.
    """
    orderID: str = Field(..., min_length=1, max_length=64)
    first_name: Optional[str] = Field(None, max_length=80)
    last_name: Optional[str] = Field(None, max_length=80)
    email: Optional[str] = Field(None, max_length=200)
    phone: Optional[str] = Field(None, max_length=25)
    privacy: Optional[bool] = None

    @field_validator("orderID", mode="before")
    @classmethod
    def strip_order(cls, v):
        return v.strip() if isinstance(v, str) else v


class CaptureResponse(BaseModel):
    ok: bool = True
    status: str
    orderID: str
    captureId: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    memberNumber: Optional[str] = None
    emailSent: bool = False
    cardSent: bool = False
    correlationId: str
    already_completed: Optional[bool] = None
    warnings: Optional[List[str]] = None


class CapturePendingResponse(BaseModel):
    """Provider did not report COMPLETED yet."""
    ok: bool = True
    paypalStatus: str
    correlationId: str
    message: str


class HandoffRequest(BaseModel):
    orderID: str = Field(..., min_length=1)
    returnUrl: Optional[str] = None
    source: Optional[str] = None


class HandoffResponse(BaseModel):
    ok: bool = True
    redirectUrl: Optional[str] = None
    token: Optional[str] = None
    message: Optional[str] = None


class MembershipVerifyResponse(BaseModel):
    """Public card check. No personal data."""
    found: bool
    status: Optional[str] = None
    active: bool = False
    memberSince: Optional[datetime] = None
    memberUntil: Optional[datetime] = None


class AffiliationAdminResponse(BaseModel):
    """Affiliation as shown to administrators."""
    id: str
    order_id: Optional[str] = None
    member_number: Optional[str] = None
    first_name: str
    last_name: str
    email: str
    phone: str
    payer_email: Optional[str] = None
    status: str
    active: bool = False
    member_since: Optional[datetime] = None
    member_until: Optional[datetime] = None
    confirmation_email_sent_at: Optional[datetime] = None
    membership_card_sent_at: Optional[datetime] = None
    last_paypal_status: Optional[str] = None
    last_paypal_checked_at: Optional[datetime] = None
    created: datetime
    updated: datetime

    class Config:
        from_attributes = True


class AffiliationListResponse(BaseModel):
    """Paginated list of affiliations."""
    page: int
    perPage: int
    totalItems: int
    totalPages: int
    items: List[AffiliationAdminResponse]


class ResendCardResponse(BaseModel):
    ok: bool
    cardSent: bool
    memberNumber: str
    warnings: Optional[List[str]] = None
