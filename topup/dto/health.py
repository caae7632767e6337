from datetime import datetime

from pydantic import BaseModel, field_serializer

from topup.utils.time import WIB


class HealthResponse(BaseModel):
    status: str
    current_time: datetime
    database: str
    payment_signing: bool
    webhook_verification: bool

    @field_serializer("current_time", when_used="json")
    def serialize_wib(self, value: datetime) -> datetime:
        return value.astimezone(WIB)
