import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from topup.repositories.transaction_repository import TransactionRepository
from topup.services.lifecycle import SuccessHook, TransactionLifecycle, log_fulfillment
from topup.services.webhook_service import WebhookService
from topup.services.zenospay_client import ZenospayClient
from topup.utils.config import ZenospayConfig, settings
from topup.utils.db import get_db

logger = logging.getLogger(__name__)

T = TypeVar("T")


def get_zenospay_config(request: Request) -> ZenospayConfig:
    return request.app.state.zenospay_config


def get_provider(request: Request) -> ZenospayClient:
    return request.app.state.zenospay_client


def get_success_hook() -> SuccessHook:
    return log_fulfillment


def get_lifecycle(
    db: AsyncSession = Depends(get_db),
    provider: ZenospayClient = Depends(get_provider),
    on_success: SuccessHook = Depends(get_success_hook),
) -> TransactionLifecycle:
    return TransactionLifecycle(TransactionRepository(db), provider, on_success=on_success)


def get_webhook_service(
    config: ZenospayConfig = Depends(get_zenospay_config),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
) -> WebhookService:
    return WebhookService(config, lifecycle)


async def db_bound(operation: Awaitable[T], *, timeout: float | None = None, bounded: bool = True) -> T:
    """Await ``operation`` and turn database trouble into a 503.

    Operations that also wait on the payment provider pass ``bounded=False``; the
    provider client enforces its own timeout.
    """
    limit = (timeout or settings.db_operation_timeout_seconds) if bounded else None
    try:
        return await asyncio.wait_for(operation, timeout=limit)
    except asyncio.TimeoutError as exc:
        logger.exception("Database operation timed out")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database operation timed out") from exc
    except SQLAlchemyError as exc:
        logger.exception("Database error")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable") from exc
