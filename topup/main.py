import asyncio
import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from topup.router.routes_health import router as health_router
from topup.router.routes_transactions import router as transactions_router
from topup.router.routes_webhooks import router as webhooks_router
from topup.services.zenospay_client import ZenospayClient
from topup.utils.config import ZenospayConfig, settings
from topup.utils import db as db_core
from topup.utils.errors import ProviderError, TopUpError
from topup.utils.logging import configure_logging
from topup.models.transaction import Transaction  # noqa: F401

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    # Fails fast on unparseable PEM keys.
    zenospay_config = ZenospayConfig.from_settings(settings)
    if zenospay_config.webhook_disable_verify:
        logger.warning("ZENOS_WEBHOOK_DISABLE_VERIFY is set: webhook signatures are NOT checked")
    if zenospay_config.private_key is None:
        logger.warning("ZENOS_PRIVATE_KEY is not set: QRIS payments cannot be initiated")

    logger.info("Starting app and validating DB connectivity")
    await asyncio.wait_for(db_core.check_db_connection(), timeout=settings.db_operation_timeout_seconds)
    logger.info("Database connection check successful")
    if settings.db_auto_create:
        await db_core.ensure_tables_exist()
        logger.info("Schema ensure step completed")

    app.state.zenospay_config = zenospay_config
    app.state.zenospay_client = ZenospayClient(
        zenospay_config, httpx.AsyncClient(timeout=zenospay_config.timeout_seconds)
    )
    try:
        yield
    finally:
        await app.state.zenospay_client.http_client.aclose()
        # Only close pooled DB connections; this does not drop tables.
        await db_core.engine.dispose()


app = FastAPI(title="Top Up Payments API", lifespan=lifespan)
app.include_router(health_router)
app.include_router(webhooks_router)
app.include_router(transactions_router)


@app.exception_handler(TopUpError)
async def handle_topup_error(request: Request, exc: TopUpError) -> JSONResponse:
    content = {"detail": exc.detail}
    if isinstance(exc, ProviderError):
        content["provider_status"] = exc.provider_status
        content["provider_body"] = exc.body
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    else:
        logger.warning("%s %s rejected (%s): %s", request.method, request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=content)
