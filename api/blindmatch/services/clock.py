from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from .. import config


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def local_date(now: datetime, tz: str = config.MATCH_TIMEZONE) -> date:
    return now.astimezone(ZoneInfo(tz)).date()
