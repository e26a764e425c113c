import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi import _rate_limit_exceeded_handler
from portfolio.api.collections import router as collections_router
from portfolio.api.uploads import router as uploads_router
from portfolio.core.config import settings
from portfolio.core.database import AsyncSessionLocal
from portfolio.core.logging import configure_logging
from portfolio.core.rate_limit import limiter
from portfolio.services.upload_jobs import UploadJobManager

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Portfolio Media", version="1.0.0")
app.state.limiter = limiter
app.state.upload_jobs = UploadJobManager(AsyncSessionLocal)
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


def _allowed_origins() -> list[str]:
    origins = [settings.FRONTEND_URL.rstrip("/")]
    if settings.FRONTEND_URLS:
        extra = [item.strip().rstrip("/") for item in settings.FRONTEND_URLS.split(",") if item.strip()]
        origins.extend(extra)
    return list(dict.fromkeys(origins))

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(collections_router)
app.include_router(uploads_router)


@app.on_event("startup")
async def log_startup() -> None:
    logger.info("asset store=%s namespace=%s", settings.ASSET_STORE, settings.ASSET_NAMESPACE)


@app.on_event("shutdown")
async def stop_upload_jobs() -> None:
    await app.state.upload_jobs.shutdown()


@app.get("/health")
async def health():
    return {"status": "ok"}
