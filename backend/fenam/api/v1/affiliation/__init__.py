"""
Affiliation API routers.

Provides endpoints for:
- PayPal orders and free affiliations
- Payment capture and completion
- Order based partner handoff
"""
from fastapi import APIRouter

from fenam.api.v1.affiliation.orders import router as orders_router
from fenam.api.v1.affiliation.capture import router as capture_router
from fenam.api.v1.affiliation.handoff import router as handoff_router

# Combined affiliation router
affiliation_router = APIRouter(prefix="/affiliation", tags=["affiliation"])

affiliation_router.include_router(orders_router)
affiliation_router.include_router(capture_router)
affiliation_router.include_router(handoff_router)

__all__ = ["affiliation_router"]
