import logging
from collections.abc import Mapping
from typing import Any

from topup.models.transaction import Transaction
from topup.services.lifecycle import TransactionLifecycle
from topup.utils.config import ZenospayConfig
from topup.utils.errors import AuthenticationError, ValidationError
from topup.utils.signing import build_string_to_sign, verify

logger = logging.getLogger(__name__)

SIGNATURE_HEADERS = ("x-signature", "x-zenos-signature", "zenos-signature")
TIMESTAMP_HEADERS = ("x-timestamp", "x-zenos-timestamp", "zenos-timestamp")


def _first_header(headers: Mapping[str, str], names: tuple[str, ...]) -> str | None:
    for name in names:
        value = headers.get(name)
        if value:
            return value
    return None


class WebhookService:
    def __init__(self, config: ZenospayConfig, lifecycle: TransactionLifecycle):
        self.config = config
        self.lifecycle = lifecycle

    def authenticate(self, headers: Mapping[str, str], body: Any) -> None:
        if self.config.webhook_disable_verify:
            return

        lowered = {name.lower(): value for name, value in headers.items()}
        signature = _first_header(lowered, SIGNATURE_HEADERS)
        timestamp = _first_header(lowered, TIMESTAMP_HEADERS)
        if not signature or not timestamp:
            logger.warning("Rejected webhook without signature or timestamp headers")
            raise AuthenticationError("Missing webhook signature")

        # Always the configured callback path, never whatever path the caller claims.
        string_to_sign = build_string_to_sign("POST", self.config.webhook_endpoint, body, timestamp)
        if not verify(string_to_sign, signature, self.config.public_key):
            logger.warning("Rejected webhook with invalid signature. timestamp=%s", timestamp)
            raise AuthenticationError("Invalid webhook signature")

    async def handle_notification(self, headers: Mapping[str, str], body: Any) -> Transaction:
        self.authenticate(headers, body)

        if not isinstance(body, Mapping):
            raise ValidationError("Webhook payload must be a JSON object")
        reference = body.get("merchant_transaction_id")
        if reference is None or not str(reference).strip():
            raise ValidationError("Missing reference in webhook payload")

        return await self.lifecycle.apply_webhook_event(str(reference).strip(), body)
