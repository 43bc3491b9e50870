"""
main.py — UMID Registry Service
=================================
Builds the FastAPI app for the Universal Medical ID registry:

    /umid/...    patient (and admin) lifecycle: issue, update, deactivate,
                 live code + QR token, access history
    /access/...  clinical reads: code-gated, role-scoped, always audited
    /admin/...   administrative listings

Startup opens the credential store and arms the crypto engine. The service
refuses to start without ENCRYPTION_KEY, since every stored TOTP secret is
encrypted with it.

    uvicorn main:app --reload
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse

from api.routes_access import router as access_router
from api.routes_admin import router as admin_router
from api.routes_umid import router as umid_router
from config import settings
from core.crypto import crypto_engine
from core.errors import UMIDError
from db.session import close_db, init_db, ping_db

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"

logger = logging.getLogger("umid.main")


def configure_logging():
    """Console + file, one format for every umid.* logger."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=[logging.StreamHandler(), logging.FileHandler(settings.LOG_FILE)],
    )


# ── Startup / shutdown ────────────────────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info(f"{settings.APP_NAME} v{settings.APP_VERSION} starting ({settings.ENVIRONMENT})")

    await init_db()
    crypto_engine.initialize()      # raises if ENCRYPTION_KEY is missing
    logger.info(
        f"TOTP: {settings.TOTP_DIGITS} digits / {settings.TOTP_PERIOD_SECONDS}s / {settings.TOTP_ALGORITHM}, "
        f"throttle after {settings.RATE_LIMIT_MAX_FAILURES} failures per {settings.RATE_LIMIT_WINDOW_SECONDS}s"
    )
    logger.info(f"Ready on {settings.HOST}:{settings.PORT}")

    yield

    await close_db()
    logger.info("Stopped")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Patient-controlled medical IDs with TOTP-gated, role-scoped, audited access.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
)

# Host header pinning in production only
if settings.ENVIRONMENT == "production":
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.ALLOWED_HOSTS)


# ── Error mapping ─────────────────────────────────────────────────────────────
@app.exception_handler(UMIDError)
async def umid_error_handler(request: Request, exc: UMIDError):
    """NotFound → 404, Conflict → 409, Unauthorized → 403, StoreUnavailable → 503."""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} → {exc.code}: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content={"error": exc.code, "detail": exc.detail})


# ── Routers ───────────────────────────────────────────────────────────────────
app.include_router(umid_router, prefix="/umid", tags=["UMID Lifecycle"])
app.include_router(access_router, prefix="/access", tags=["Clinical Access"])
app.include_router(admin_router, prefix="/admin", tags=["Administration"])


# ── Status ────────────────────────────────────────────────────────────────────
@app.get("/", tags=["Status"])
async def root():
    return {"service": settings.APP_NAME, "version": settings.APP_VERSION, "docs": "/docs"}


@app.get("/health-check", tags=["Status"])
async def health_check():
    """Liveness of the two things every request needs: the store and the crypto engine."""
    database = "ok" if await ping_db() else "unavailable"
    crypto = crypto_engine.is_ready()
    status_code = 200 if database == "ok" and crypto == "ok" else 503
    return JSONResponse(status_code=status_code, content={"database": database, "crypto": crypto})


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
