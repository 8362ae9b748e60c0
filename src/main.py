import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import APIRouter, FastAPI
from slowapi.errors import RateLimitExceeded

from src.config.logging_config import configure_logging
from src.config.settings import settings
from src.database.client import close_db, init_db
from src.features.auth.router import router as auth_router
from src.features.oidc.client import OidcClient
from src.features.oidc.exceptions import OidcUnavailableException
from src.features.oidc.router import router as oidc_router
from src.features.user.router import router as user_router
from src.shared.rate_limit import limiter, rate_limit_handler

configure_logging(settings.log_level, settings.log_format)
logger = logging.getLogger(__name__)


async def refresh_oidc_metadata(oidc_client: OidcClient, interval_seconds: float) -> None:
    """Periodically re-run OIDC discovery; cached metadata stays in use on failure."""
    while True:
        await asyncio.sleep(interval_seconds)
        await oidc_client.refresh_metadata()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    await init_db()

    http_client = httpx.AsyncClient(timeout=settings.oidc_http_timeout_seconds)
    oidc_client = OidcClient(settings.get_oidc_config(), http_client)
    app.state.oidc_client = oidc_client

    refresh_task = None
    if oidc_client.config is None:
        logger.info("OIDC is not configured; OIDC login is disabled")
    else:
        try:
            await oidc_client.discover()
        except OidcUnavailableException as e:
            logger.error(f"OIDC discovery failed, OIDC login disabled until the provider is reachable: {e.detail}")
        refresh_task = asyncio.create_task(
            refresh_oidc_metadata(oidc_client, settings.oidc_discovery_refresh_minutes * 60)
        )

    yield

    # Shutdown
    if refresh_task is not None:
        refresh_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await refresh_task
    await http_client.aclose()
    await close_db()


app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
    openapi_url="/openapi.json" if settings.debug else None,
)

# Rate limiting (per client IP, see src.shared.rate_limit)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_handler)

# Router Registration
routers: list[APIRouter] = [
    auth_router,
    oidc_router,
    user_router,
]

for router in routers:
    app.include_router(router, prefix=settings.api_prefix)


@app.get("/")
async def root():
    return {"message": settings.app_name, "status": "running"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
