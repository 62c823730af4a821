"""Daily testing windows and the timezone handling around them."""

import logging
import os
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .errors import TimezoneResolutionError

logger = logging.getLogger(__name__)

MORNING = "MORNING"
NOON = "NOON"
AFTERNOON = "AFTERNOON"
TIME_SLOTS = (MORNING, NOON, AFTERNOON)

# Inclusive hour ranges.
SLOT_HOURS = {
    MORNING: (6, 11),
    NOON: (12, 12),
    AFTERNOON: (13, 18),
}

SLOT_WINDOWS = {
    MORNING: {"label": "Morning", "window": "6:00 AM - 11:59 AM"},
    NOON: {"label": "Noon", "window": "12:00 PM - 12:59 PM"},
    AFTERNOON: {"label": "Afternoon", "window": "1:00 PM - 6:00 PM"},
}

SOURCE_CLIENT = "client"
SOURCE_SERVER = "server"
SOURCE_UTC = "utc"


def get_app_timezone():
    return (os.environ.get("OFFICENET_TIMEZONE") or os.environ.get("TZ") or "UTC").strip() or "UTC"


def classify(hour):
    if hour is None:
        return None
    for slot in TIME_SLOTS:
        start, end = SLOT_HOURS[slot]
        if start <= hour <= end:
            return slot
    return None


def get_zone(name):
    if not name or not isinstance(name, str):
        raise TimezoneResolutionError("timezone name is empty")
    if name.strip().upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
        raise TimezoneResolutionError(f"unknown timezone {name!r}") from exc


def _as_aware(instant):
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant


def to_local(instant, timezone_name):
    return _as_aware(instant).astimezone(get_zone(timezone_name))


def classify_for_timezone(instant, timezone_name):
    """
    Classify `instant` by its local hour in `timezone_name`.

    Returns (True, slot) when the conversion worked, slot possibly None,
    and (False, None) when the timezone could not be resolved.
    """
    try:
        local = to_local(instant, timezone_name)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning("Failed to resolve time slot for timezone %r: %s", timezone_name, exc)
        return False, None
    return True, classify(local.hour)


def resolve_current_slot(now=None, client_timezone=None, app_timezone=None):
    now = _as_aware(now or datetime.now(timezone.utc))
    candidates = [
        (SOURCE_CLIENT, client_timezone),
        (SOURCE_SERVER, app_timezone if app_timezone is not None else get_app_timezone()),
        (SOURCE_UTC, "UTC"),
    ]
    for source, name in candidates:
        if not name:
            continue
        resolved, slot = classify_for_timezone(now, name)
        if not resolved:
            continue
        local = to_local(now, name)
        return {
            "slot": slot,
            "timezone": name,
            "source": source,
            "local_time": local.replace(microsecond=0).isoformat(),
        }
    logger.error("No timezone source could be resolved; treating as outside testing hours")
    return {"slot": None, "timezone": None, "source": None, "local_time": None}


def parse_timestamp(value):
    if isinstance(value, datetime):
        return _as_aware(value).astimezone(timezone.utc)
    if not isinstance(value, str) or not value.strip():
        raise ValueError("timestamp must be a non-empty string")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    return _as_aware(datetime.fromisoformat(raw)).astimezone(timezone.utc)


def format_timestamp(value):
    normalized = _as_aware(value).astimezone(timezone.utc).replace(microsecond=0, tzinfo=None)
    return normalized.isoformat() + "Z"


def slot_for_timestamp(value, timezone_name="UTC"):
    try:
        instant = parse_timestamp(value)
    except ValueError:
        logger.warning("Ignoring unparseable test timestamp %r", value)
        return None
    resolved, slot = classify_for_timezone(instant, timezone_name)
    return slot if resolved else None


def local_day_bounds(day, timezone_name="UTC"):
    """Return the [start, end) UTC timestamps of `day` as seen in `timezone_name`."""
    zone = get_zone(timezone_name)
    start = datetime.combine(day, time(0, 0), tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time(0, 0), tzinfo=zone)
    return format_timestamp(start), format_timestamp(end)


def local_today(timezone_name="UTC", now=None):
    now = _as_aware(now or datetime.now(timezone.utc))
    return to_local(now, timezone_name).date()


def parse_time_of_day(value, default=None):
    parts = (value or "").strip().split(":")
    if len(parts) != 2:
        if default is not None:
            return default
        raise ValueError("time of day must be HH:MM")
    try:
        return time(hour=int(parts[0]), minute=int(parts[1]))
    except (TypeError, ValueError):
        if default is not None:
            return default
        raise


def slot_window_info():
    return {slot.lower(): dict(SLOT_WINDOWS[slot]) for slot in TIME_SLOTS}


def parse_day(value):
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value).strip())
