from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column in the store uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def months_ago(months: int, now: Optional[datetime] = None) -> datetime:
    """Same day-of-month `months` back, clamped to the end of shorter months."""
    now = now or utcnow()
    month_index = now.year * 12 + (now.month - 1) - int(months)
    year, month = divmod(month_index, 12)
    month += 1
    for day in range(now.day, 0, -1):
        try:
            return now.replace(year=year, month=month, day=day)
        except ValueError:
            continue
    return now - timedelta(days=30 * int(months))


def parse_iso_date(value: Any) -> Optional[date]:
    """Parse YYYY-MM-DD (or pass a date through). Returns None for falsy/invalid input."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text or text.startswith("0000"):
        return None
    try:
        return datetime.strptime(text, "%Y-%m-%d").date()
    except ValueError:
        return None


def default_sync_window(days: int, today: Optional[date] = None) -> tuple[date, date]:
    """Inclusive [today - days, today] window used by inbound play sync."""
    end = today or utcnow().date()
    return end - timedelta(days=max(0, int(days))), end
