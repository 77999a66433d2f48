"""Service-local time. Billing days and service dates are calendar days in TIMEZONE."""
from datetime import date, datetime
from zoneinfo import ZoneInfo

from config.settings import settings


def local_now() -> datetime:
    return datetime.now(ZoneInfo(settings.TIMEZONE))


def local_today() -> date:
    return local_now().date()
