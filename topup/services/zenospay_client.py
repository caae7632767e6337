"""Outbound client for the Zenospay QRIS API.

Requests are signed with the merchant's RSA key over
``POST:<path>:<sha256 of the JSON body>:<unix timestamp>``. The provider has
shipped several response shapes over time; :func:`normalize_qris_response`
is the only place that knows about them.
"""
import logging
from collections.abc import Mapping
from typing import Any

import httpx

from topup.dto.payment import QrisPayment
from topup.utils.config import ZenospayConfig
from topup.utils.errors import ProviderError
from topup.utils.signing import build_string_to_sign, canonical_json, sign, unix_timestamp

logger = logging.getLogger(__name__)

_QRIS_FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "qr_string": ("qr_content", "qr_string", "qrString", "qr", "qrCode"),
    "qr_url": ("qr_url", "qrUrl", "qr_code_url", "codeUrl"),
    "redirect_url": ("redirect_url", "redirectUrl"),
    "transaction_id": ("transaction_id", "transactionId"),
}


def _first_present(data: Mapping[str, Any], aliases: tuple[str, ...]) -> str | None:
    for name in aliases:
        value = data.get(name)
        if value not in (None, ""):
            return str(value)
    return None


def normalize_qris_response(raw: Any) -> QrisPayment:
    data = raw.get("data") if isinstance(raw, Mapping) else None
    if not isinstance(data, Mapping):
        data = raw if isinstance(raw, Mapping) else {}
    fields = {name: _first_present(data, aliases) for name, aliases in _QRIS_FIELD_ALIASES.items()}
    return QrisPayment(**fields, raw=raw)


def _clean_headers(headers: dict[str, str | None]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if value}


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ZenospayClient:
    def __init__(self, config: ZenospayConfig, http_client: httpx.AsyncClient):
        self.config = config
        self.http_client = http_client

    async def create_qris_payment(
        self,
        *,
        reference_id: str,
        amount: int,
        payer_label: str,
        quantity_label: str | int,
        description: str | None = None,
    ) -> QrisPayment:
        endpoint_path = self.config.create_qris_path
        payload = {
            "merchant_transaction_id": reference_id,
            "amount": str(amount),
            "currency": "IDR",
            "description": description or "Top Up",
            "customer_name": payer_label,
            "product_name": str(quantity_label),
        }
        timestamp = unix_timestamp()
        signature = sign(
            build_string_to_sign("POST", endpoint_path, payload, timestamp),
            self.config.private_key,
        )
        headers = _clean_headers(
            {
                "Content-Type": "application/json",
                "X-TIMESTAMP": timestamp,
                "X-SIGNATURE": signature,
                "X-PARTNER-ID": self.config.partner_id,
            }
        )

        url = f"{self.config.base_url}{endpoint_path}"
        try:
            # Send the exact bytes that were hashed into the signature.
            response = await self.http_client.post(
                url,
                content=canonical_json(payload).encode("utf-8"),
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            logger.error("Zenospay request timed out. reference_id=%s", reference_id)
            raise ProviderError("Payment provider timed out", kind="timeout") from exc
        except httpx.TransportError as exc:
            logger.error("Zenospay unreachable. reference_id=%s error=%s", reference_id, exc)
            raise ProviderError("Payment provider unavailable", kind="unavailable") from exc

        body = _response_body(response)
        if not response.is_success:
            logger.error(
                "Zenospay rejected QRIS request. reference_id=%s status=%s body=%s",
                reference_id,
                response.status_code,
                body,
            )
            raise ProviderError(
                "Failed to initiate QRIS payment",
                kind="bad_gateway",
                status_code=response.status_code,
                body=body,
            )

        logger.info("Zenospay QRIS created. reference_id=%s status=%s", reference_id, response.status_code)
        return normalize_qris_response(body)
