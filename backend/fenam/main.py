"""
FENAM Affiliation API - Main entry point.

Backend of the FENAM membership site:

- Affiliation: PayPal orders, capture, free affiliations, order handoff
- Member: magic link login, session cookie, partner handoff
- Membership: public card verification
- Admin: affiliation register and card resend

All endpoints live under /api/v1.
"""
import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fenam.core.config import settings
from fenam.core.logging import configure_logging
from fenam.core.rate_limit import RateLimiterRegistry, run_periodic_sweep
from fenam.db.base import init_db

from fenam.api.v1 import health
from fenam.api.v1.affiliation import affiliation_router
from fenam.api.v1.member import member_router
from fenam.api.v1.membership import verify as membership_verify
from fenam.api.v1.admin import admin_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown."""
    configure_logging()
    # Note: In production, use Alembic migrations instead
    await init_db()
    sweeper = asyncio.create_task(run_periodic_sweep(app.state.rate_limiters))
    logger.info(f"{settings.APP_NAME} started (env={settings.APP_ENV})")
    yield
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper


app = FastAPI(
    title="FENAM Affiliation API",
    version="1.0.0",
    description="""
FENAM membership backend.

## Modules

- **Affiliation**: PayPal checkout, completion, handoff to partners
- **Member**: Magic link login and member session
- **Membership**: Public card verification
- **Admin**: Affiliation register
    """,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.DEBUG else None,
    redoc_url="/api/redoc" if settings.DEBUG else None,
)

app.state.rate_limiters = RateLimiterRegistry()

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# V1 API ENDPOINTS
# ============================================================================

# Health - /api/v1/health
app.include_router(health.router, prefix="/api/v1")

# Affiliation module - /api/v1/affiliation/*
app.include_router(affiliation_router, prefix="/api/v1")

# Member module - /api/v1/member/*
app.include_router(member_router, prefix="/api/v1")

# Membership verification - /api/v1/membership/verify
app.include_router(membership_verify.router, prefix="/api/v1")

# Admin module - /api/v1/admin/*
app.include_router(admin_router, prefix="/api/v1")


# ============================================================================
# ERROR HANDLERS
# ============================================================================

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    if settings.DEBUG:
        return JSONResponse(
            status_code=500,
            content={"detail": str(exc)}
        )
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"}
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "fenam.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
