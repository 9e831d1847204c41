from contextlib import asynccontextmanager
from typing import Any, cast

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from hub_connector import __version__
from hub_connector.api import admin, hub, manager, sync, tracking
from hub_connector.core.config import settings
from hub_connector.core.errors import ConnectorError, RateLimited, init_sentry
from hub_connector.core.logging_config import get_logger
from hub_connector.core.scheduler import shutdown_scheduler, start_scheduler
from hub_connector.middleware.context import RequestContextMiddleware

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Hub Connector starting", version=__version__, site_url=settings.SITE_URL)
    init_sentry(settings.SENTRY_DSN, environment=settings.ENVIRONMENT, release=__version__)

    if settings.RUN_SCHEDULER:
        start_scheduler()
    else:
        logger.info("RUN_SCHEDULER is false, skipping scheduler startup in this process")

    try:
        yield
    finally:
        shutdown_scheduler()


app = FastAPI(title=settings.PROJECT_NAME, openapi_url=f"{settings.API_V1_STR}/openapi.json", lifespan=lifespan)

# The tracking script runs on the site's own pages
origins = [settings.SITE_URL] + [o.strip() for o in settings.CORS_ORIGINS.split(",")]
origins = list(set([o for o in origins if o]))

# Trust X-Forwarded-* from the reverse proxy
app.add_middleware(cast(Any, ProxyHeadersMiddleware), trusted_hosts=["*"])

app.add_middleware(cast(Any, RequestContextMiddleware))

app.add_middleware(
    cast(Any, CORSMiddleware),
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-RateLimit-Limit", "X-RateLimit-Remaining", "X-RateLimit-Reset"],
)


@app.exception_handler(ConnectorError)
async def connector_error_handler(request: Request, exc: ConnectorError):
    headers = {}
    if isinstance(exc, RateLimited):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "code": "invalid_request",
            "message": "Invalid request payload.",
            "errors": jsonable_encoder(exc.errors()),
        },
    )


# Browser capture
app.include_router(tracking.router, prefix=settings.API_V1_STR, tags=["tracking"])
# Site-key authenticated manager surface
app.include_router(manager.router, prefix=settings.API_V1_STR, tags=["manager"])
# Administrator surface
app.include_router(hub.router, prefix=f"{settings.API_V1_STR}/hub", tags=["hub"])
app.include_router(sync.router, prefix=f"{settings.API_V1_STR}/sync", tags=["sync"])
app.include_router(admin.router, prefix=f"{settings.API_V1_STR}/admin", tags=["admin"])


@app.get("/")
def root():
    return {"message": "Hub Connector", "version": __version__}


@app.get("/health")
def health():
    """Basic liveness check. Manager health reports live under /api/v1/health."""
    return {"status": "healthy"}
