from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from topup.utils.enums import TransactionStatus
from topup.utils.time import WIB


class TransactionCreateIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    total_diamond: int = Field(gt=0, strict=True)
    total_amount: int = Field(gt=0, strict=True)
    no_wa: str = Field(min_length=1, max_length=32)
    target_id: int = Field(gt=0, strict=True)


class TransactionStatusUpdateIn(BaseModel):
    status: TransactionStatus


class MerchantStatusUpdateIn(TransactionStatusUpdateIn):
    model_config = ConfigDict(str_strip_whitespace=True)

    merchant_transaction_id: str | None = Field(default=None, max_length=64)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    merchant_transaction_id: str
    total_diamond: int
    total_amount: int
    no_wa: str
    target_id: int
    status: TransactionStatus
    created_at: datetime
    updated_at: datetime

    @field_serializer("created_at", "updated_at", when_used="json")
    def serialize_wib(self, value: datetime) -> datetime:
        if value.tzinfo is None:
            # SQLite hands back naive UTC timestamps.
            return value
        return value.astimezone(WIB)


class TransactionEnvelope(BaseModel):
    transaction: TransactionOut


class TransactionStatusOut(TransactionEnvelope):
    status: TransactionStatus


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class TransactionPage(BaseModel):
    transactions: list[TransactionOut]
    pagination: Pagination
