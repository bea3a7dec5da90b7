"""
SQLAlchemy models for the FENAM affiliation backend.

- Affiliation: membership record, pending until payment is confirmed
- MemberLoginToken: one-time magic link secret (hashed)
"""
from fenam.models.affiliation import Affiliation, AffiliationSnapshot, AffiliationStatus
from fenam.models.member_login_token import MemberLoginToken

__all__ = [
    "Affiliation",
    "AffiliationSnapshot",
    "AffiliationStatus",
    "MemberLoginToken",
]
