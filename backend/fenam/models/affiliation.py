"""
Affiliation model.

An affiliation is a membership application: created pending when a payment
order is opened, completed once the payment is confirmed.
"""
from typing import Optional, TYPE_CHECKING
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from sqlalchemy import String, Boolean, Enum as SQLEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship
from fenam.models.base import BaseModel, UTCDateTime, utcnow

if TYPE_CHECKING:
    from fenam.models.member_login_token import MemberLoginToken


class AffiliationStatus(str, Enum):
    """Lifecycle of an affiliation. Completed is terminal."""
    PENDING = "pending"
    COMPLETED = "completed"


@dataclass(frozen=True)
class AffiliationSnapshot:
    """Plain copy of the fields notifications need, unaffected by session rollbacks."""
    id: str
    order_id: Optional[str]
    email: str
    first_name: str
    last_name: str
    member_number: Optional[str]
    member_since: Optional[datetime]
    member_until: Optional[datetime]
    confirmation_email_sent_at: Optional[datetime]
    membership_card_sent_at: Optional[datetime]


class Affiliation(BaseModel):
    """
    Affiliation (membership) record.

    Marker fields (confirmation_email_sent_at, membership_card_sent_at) are
    idempotency guards for notifications; last_paypal_* are support
    breadcrumbs written when the provider state is checked.
    """
    __tablename__ = "affiliations"

    # Payment order reference
    order_id: Mapped[Optional[str]] = mapped_column(
        String(64),
        unique=True,
        nullable=True,
        index=True
    )

    # Membership card number, assigned once at completion
    member_number: Mapped[Optional[str]] = mapped_column(
        String(32),
        unique=True,
        nullable=True,
        index=True
    )

    # Profile
    first_name: Mapped[str] = mapped_column(String(80), nullable=False)
    last_name: Mapped[str] = mapped_column(String(80), nullable=False)
    email: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    phone: Mapped[str] = mapped_column(String(25), nullable=False)
    privacy: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Identity reported by the payment provider, only when different from email
    payer_email: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)

    status: Mapped[AffiliationStatus] = mapped_column(
        SQLEnum(
            AffiliationStatus,
            name="affiliationstatus",
            create_constraint=True,
            values_callable=lambda x: [e.value for e in x]
        ),
        default=AffiliationStatus.PENDING,
        nullable=False,
        index=True
    )

    # Validity window
    member_since: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    member_until: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True, index=True)

    # Notification markers
    confirmation_email_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    membership_card_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # PayPal diagnostics
    last_paypal_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_paypal_checked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Relationships
    login_tokens: Mapped[list["MemberLoginToken"]] = relationship(
        "MemberLoginToken",
        back_populates="affiliation",
        cascade="all, delete-orphan"
    )

    @property
    def is_completed(self) -> bool:
        return self.status == AffiliationStatus.COMPLETED

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Completed and still inside its validity window."""
        now = now or utcnow()
        return (
            self.is_completed and
            self.member_until is not None and
            self.member_until > now
        )

    def snapshot(self) -> AffiliationSnapshot:
        return AffiliationSnapshot(
            id=self.id,
            order_id=self.order_id,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            member_number=self.member_number,
            member_since=self.member_since,
            member_until=self.member_until,
            confirmation_email_sent_at=self.confirmation_email_sent_at,
            membership_card_sent_at=self.membership_card_sent_at,
        )

    def __repr__(self) -> str:
        return f"<Affiliation {self.id} {self.member_number or '-'} ({self.status.value})>"
