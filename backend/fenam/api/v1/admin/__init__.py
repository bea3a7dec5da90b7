"""
Admin API routers for FENAM.

Every route requires the bearer ADMIN_TOKEN.
"""
from fastapi import APIRouter, Depends

from fenam.core.deps import require_admin
from fenam.api.v1.admin.affiliations import router as affiliations_router

admin_router = APIRouter(
    prefix="/admin",
    tags=["admin"],
    dependencies=[Depends(require_admin)],
)

admin_router.include_router(affiliations_router)

__all__ = ["admin_router"]
