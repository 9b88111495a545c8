"""Main application entry point."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator

from broker.api.routes import api_keys, integrations, oauth, sync, v1, webhooks
from broker.config import settings
from broker.container import Broker
from broker.db.models import Base
from broker.errors import BrokerError, InvalidRequest, ProviderUnavailable, QuotaExceeded
from broker.logging_config import setup_logging
from broker.worker.scheduler import setup_scheduler

setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting integration broker...")

    # Tests install a pre-built broker before startup
    broker = getattr(app.state, "broker", None)
    owns_broker = broker is None
    if owns_broker:
        broker = Broker.build(settings)
        app.state.broker = broker

    async with broker.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    scheduler = None
    if broker.settings.scheduler_enabled:
        scheduler = setup_scheduler(broker)
        scheduler.start()
        logger.info("Scheduler started")

    yield

    logger.info("Shutting down...")
    if scheduler:
        scheduler.shutdown()
    if owns_broker:
        await broker.close()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Seller Integration Broker",
    description="Connect seller accounts to third-party providers",
    version="0.1.0",
    lifespan=lifespan,
)

instrumentator = Instrumentator(
    should_group_status_codes=True,
    should_ignore_untemplated=True,
    should_respect_env_var=True,
    should_instrument_requests_inprogress=True,
    excluded_handlers=["/metrics", "/health"],
    inprogress_name="http_requests_inprogress",
    inprogress_labels=True,
)
instrumentator.instrument(app).expose(app, include_in_schema=True, tags=["monitoring"])


@app.exception_handler(BrokerError)
async def broker_error_handler(request: Request, exc: BrokerError):
    """Render broker errors as ``{"error": {"code", "message"}}``."""
    error = {"code": exc.code, "message": exc.message}
    headers = {}
    if isinstance(exc, QuotaExceeded):
        headers["Retry-After"] = str(exc.retry_after)
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
            headers["X-RateLimit-Remaining"] = "0"
    elif isinstance(exc, ProviderUnavailable) and exc.retry_after is not None:
        headers["Retry-After"] = str(exc.retry_after)
    elif isinstance(exc, InvalidRequest):
        error["provider_status"] = exc.status
        error["provider_body"] = exc.body

    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"error": error}, headers=headers)


app.include_router(oauth.router)
app.include_router(integrations.router)
app.include_router(sync.router)
app.include_router(webhooks.router)
app.include_router(api_keys.router)
app.include_router(v1.router)


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run(
        "broker.main:app",
        host=settings.app_host,
        port=settings.app_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
