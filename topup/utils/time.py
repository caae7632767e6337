from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    WIB = ZoneInfo("Asia/Jakarta")
except ZoneInfoNotFoundError:
    # Fallback for environments without tzdata installed.
    WIB = timezone(timedelta(hours=7))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
