"""
One-time login token for the member magic link.

Only the sha256 of the emailed secret is stored. A token is consumed by
setting used_at and can never be used again.
"""
from typing import Optional, TYPE_CHECKING
from datetime import datetime
from sqlalchemy import String, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column, relationship
from fenam.models.base import BaseModel, UTCDateTime, utcnow

if TYPE_CHECKING:
    from fenam.models.affiliation import Affiliation


class MemberLoginToken(BaseModel):
    __tablename__ = "member_login_tokens"

    token_hash: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True
    )

    affiliation_id: Mapped[str] = mapped_column(
        String(15),
        ForeignKey("affiliations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    used_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    # Where the member asked to go after login
    source: Mapped[str] = mapped_column(String(32), default="fenam", nullable=False)
    return_url: Mapped[Optional[str]] = mapped_column(String(2000), nullable=True)

    # Request metadata
    request_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)

    affiliation: Mapped["Affiliation"] = relationship(
        "Affiliation",
        foreign_keys=[affiliation_id],
        back_populates="login_tokens"
    )

    @property
    def is_expired(self) -> bool:
        return utcnow() >= self.expires_at

    @property
    def is_valid(self) -> bool:
        return self.used_at is None and not self.is_expired

    def __repr__(self) -> str:
        state = "used" if self.used_at else ("expired" if self.is_expired else "open")
        return f"<MemberLoginToken {self.id} ({state})>"
