"""Business-hours window used by the scheduler and the recommendation engine."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from syncengine.config import Settings


def to_business_time(moment: datetime, settings: Settings) -> datetime:
    """Convert a naive-UTC (or aware) timestamp to the business timezone."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(ZoneInfo(settings.business_timezone))


def is_business_hours(moment: datetime, settings: Settings) -> bool:
    """Monday to Friday, start <= hour < end, in the business timezone."""
    local = to_business_time(moment, settings)
    return (
        local.weekday() < 5
        and settings.business_hours_start <= local.hour < settings.business_hours_end
    )
