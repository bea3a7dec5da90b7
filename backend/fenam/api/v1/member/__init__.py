"""
Member area API routers.

Provides endpoints for:
- Magic link login request and verification
- Logout
- Current member and session based partner handoff
"""
from fastapi import APIRouter

from fenam.api.v1.member.login import router as login_router
from fenam.api.v1.member.session import router as session_router

# Combined member router
member_router = APIRouter(prefix="/member", tags=["member"])

member_router.include_router(login_router)
member_router.include_router(session_router)

__all__ = ["member_router"]
