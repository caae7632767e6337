from typing import Any

from pydantic import BaseModel


class QrisPayment(BaseModel):
    qr_string: str | None = None
    qr_url: str | None = None
    redirect_url: str | None = None
    transaction_id: str | None = None
    raw: Any = None


class PaymentInitiationOut(BaseModel):
    message: str = "QRIS payment initiated"
    reference_id: str
    transaction_id: int
    qris: QrisPayment
