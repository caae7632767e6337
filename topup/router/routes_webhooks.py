import json
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse

from topup.router.deps import db_bound, get_webhook_service
from topup.services.webhook_service import WebhookService
from topup.utils.errors import ValidationError

router = APIRouter(prefix="/api/transactions/webhook", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post("/zenospay", response_class=PlainTextResponse)
async def receive_zenospay_webhook(
    request: Request,
    service: WebhookService = Depends(get_webhook_service),
) -> PlainTextResponse:
    raw = await request.body()
    try:
        # Parsed, not validated: the signature covers the body exactly as the provider sent it.
        body = json.loads(raw) if raw.strip() else None
    except ValueError as exc:
        raise ValidationError("Webhook body must be valid JSON") from exc

    transaction = await db_bound(service.handle_notification(request.headers, body))
    logger.info(
        "Webhook accepted. merchant_transaction_id=%s status=%s",
        transaction.merchant_transaction_id,
        transaction.status,
    )
    return PlainTextResponse("OK", status_code=200)
