from datetime import UTC, date, datetime, time
from zoneinfo import ZoneInfo

from salon_bookings import settings


def utcnow() -> datetime:
    return datetime.now(UTC)


def to_utc(dt: datetime) -> datetime:
    """Ensure a datetime is UTC-aware, handling both aware and naive inputs."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def salon_tz() -> ZoneInfo:
    return ZoneInfo(settings.SALON_TIMEZONE)


def salon_today() -> date:
    return datetime.now(salon_tz()).date()


def appointment_start(appointment_date: date, appointment_time: str | time) -> datetime:
    """Salon wall-clock date + "HH:MM" → aware UTC datetime."""
    if isinstance(appointment_time, str):
        appointment_time = time.fromisoformat(appointment_time)
    local = datetime.combine(appointment_date, appointment_time, tzinfo=salon_tz())
    return local.astimezone(UTC)
