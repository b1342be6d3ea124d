import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Optional, Union

MINUTES_IN_DAY = 1440
MINUTES_IN_MONTH = 43200
MINUTES_IN_TWO_MONTHS = 86400

PREGNANCY_DAYS = 280


def unique_id() -> str:
    """20-character hex identifier for documents, files and sessions"""
    return uuid.uuid4().hex[:20]


def to_iso(dt: datetime) -> str:
    """UTC timestamp with millisecond precision and trailing Z"""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def now_iso() -> str:
    return to_iso(datetime.now(timezone.utc))


def parse_iso(value: Union[str, datetime, None]) -> datetime:
    """
    Parse an ISO-8601 timestamp into an aware datetime.
    Naive values are treated as UTC. Raises ValueError on anything else.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value.strip():
        dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Invalid timestamp: {value!r}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_distance(then: datetime, now: datetime) -> str:
    """Words for the distance between two datetimes, e.g. 'about 2 hours'"""
    seconds = abs((now - then).total_seconds())
    minutes = round(seconds / 60)

    if minutes < 1:
        return "less than a minute"
    if minutes < 45:
        return _plural(minutes, "minute")
    if minutes < 90:
        return "about 1 hour"
    if minutes < MINUTES_IN_DAY:
        return f"about {round(minutes / 60)} hours"
    if minutes < 2520:
        return "1 day"
    if minutes < MINUTES_IN_MONTH:
        return _plural(round(minutes / MINUTES_IN_DAY), "day")
    if minutes < MINUTES_IN_TWO_MONTHS:
        return f"about {_plural(round(minutes / MINUTES_IN_MONTH), 'month')}"

    months = round(seconds / (MINUTES_IN_MONTH * 60))
    if months < 12:
        return _plural(months, "month")

    years, remainder = divmod(months, 12)
    if remainder < 3:
        return f"about {_plural(years, 'year')}"
    if remainder < 9:
        return f"over {_plural(years, 'year')}"
    return f"almost {_plural(years + 1, 'year')}"


def format_distance_to_now(value: Union[str, datetime], now: Optional[datetime] = None) -> str:
    """Relative time with suffix: '3 minutes ago' or 'in 2 days'"""
    then = parse_iso(value)
    now = now or datetime.now(timezone.utc)
    words = format_distance(then, now)
    return f"in {words}" if then > now else f"{words} ago"


# ------------------------------------------------------------------------------
# Pregnancy calculations
# ------------------------------------------------------------------------------
def _as_date(value: Union[str, date, datetime]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return parse_iso(value).date()


def calculate_weeks_pregnant(lmp_date: Union[str, date, datetime], today: Optional[date] = None) -> int:
    """Completed weeks since the last menstrual period"""
    today = today or date.today()
    days = (today - _as_date(lmp_date)).days
    return max(0, days // 7)


def calculate_estimated_due_date(lmp_date: Union[str, date, datetime]) -> str:
    """LMP + 280 days, as YYYY-MM-DD"""
    return (_as_date(lmp_date) + timedelta(days=PREGNANCY_DAYS)).isoformat()


def trimester_for_week(week: int) -> int:
    if week < 14:
        return 1
    if week < 28:
        return 2
    return 3
