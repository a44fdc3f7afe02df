"""
Time helpers: UTC conversion, realm-local event window parsing and timer formatting.
"""

import re
from datetime import datetime, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from log_utils import setup_logging

logger = setup_logging(__name__)

LOCAL_DATETIME_PATTERN = re.compile(r"^(\d{4})-(\d{2})-(\d{2})[ T](\d{2}):(\d{2})$")


def ms_to_utc(epoch_ms: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime"""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=timezone.utc)


def to_utc_iso(epoch_ms: int) -> str:
    """Epoch milliseconds as ISO-8601 UTC with a Z suffix and millisecond precision"""
    return ms_to_utc(epoch_ms).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """Parse ISO-8601 (with or without Z); naive values are taken as UTC"""
    if not value:
        return None
    try:
        text = value.replace("Z", "+00:00") if value.endswith("Z") else value
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_local_datetime(value: str, tz_name: str) -> Optional[datetime]:
    """
    Parse 'YYYY-MM-DD HH:MM' in the given IANA timezone and return it in UTC.
    Returns None for an invalid format or unknown timezone.
    """
    match = LOCAL_DATETIME_PATTERN.match(str(value or "").strip())
    if not match:
        if value:
            logger.warning(f"Invalid local datetime format: {value!r}")
        return None
    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone {tz_name!r}")
        return None
    year, month, day, hour, minute = (int(part) for part in match.groups())
    try:
        local = datetime(year, month, day, hour, minute, tzinfo=zone)
    except ValueError:
        return None
    return local.astimezone(timezone.utc)


def parse_event_window(start: str, end: str, tz_name: str) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Resolve the configured event window (realm-local strings) to UTC datetimes"""
    return parse_local_datetime(start, tz_name), parse_local_datetime(end, tz_name)


def floor_to_bucket(moment: datetime, bucket_seconds: int = 60) -> datetime:
    """Floor an aware datetime to the start of its bucket"""
    epoch = int(moment.timestamp())
    return datetime.fromtimestamp(epoch - epoch % bucket_seconds, tz=timezone.utc)


def format_timer_ms(ms: int) -> str:
    """Format a duration as H:MM:SS or M:SS"""
    if ms <= 0:
        return "0:00"
    total = int(ms) // 1000
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{seconds:02d}"
    return f"{minutes}:{seconds:02d}"


def format_local_time(iso_value: str, tz_name: str) -> str:
    """Render an ISO timestamp as 'YYYY-MM-DD HH:MM' in the realm timezone"""
    moment = parse_iso(iso_value)
    if moment is None:
        return ""
    try:
        return moment.astimezone(ZoneInfo(tz_name)).strftime("%Y-%m-%d %H:%M")
    except (ZoneInfoNotFoundError, ValueError):
        return ""
