import asyncio
import logging

from fastapi import APIRouter, Depends
from sqlalchemy.exc import SQLAlchemyError

from topup.dto.health import HealthResponse
from topup.router.deps import get_zenospay_config
from topup.utils import db as db_core
from topup.utils.config import ZenospayConfig, settings
from topup.utils.time import utcnow

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/", response_model=HealthResponse)
async def health_check(config: ZenospayConfig = Depends(get_zenospay_config)) -> HealthResponse:
    try:
        await asyncio.wait_for(db_core.check_db_connection(), timeout=settings.db_operation_timeout_seconds)
        database = "ok"
    except (asyncio.TimeoutError, SQLAlchemyError, OSError):
        logger.exception("Health check could not reach the database")
        database = "unavailable"
    return HealthResponse(
        status="HEALTHY" if database == "ok" else "DEGRADED",
        current_time=utcnow(),
        database=database,
        payment_signing=config.private_key is not None,
        webhook_verification=not config.webhook_disable_verify and config.public_key is not None,
    )
