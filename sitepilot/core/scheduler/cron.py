"""
5-field cron expressions evaluated in UTC.

Fields: minute (0-59), hour (0-23), day-of-month (1-31), month (1-12), day-of-week (0-6, Sunday=0).
Tokens per field: '*', '*/n', 'a-b' (inclusive, order-normalized, clamped to the field range),
bare integers, and comma-separated lists of the last three.
All five fields must match (no day-of-month/day-of-week OR rule).

Parsing is done here so errors name the offending field; matching and next-run
search go through croniter on the normalized expression.
"""
from datetime import datetime, timedelta, timezone
from typing import FrozenSet, Optional, Tuple

from croniter import CroniterBadCronError, CroniterBadDateError, croniter

from sitepilot.core.scheduler.validation import InvalidCronError

# (name, min, max) in expression order
FIELDS: Tuple[Tuple[str, int, int], ...] = (
    ("minute", 0, 59),
    ("hour", 0, 23),
    ("day_of_month", 1, 31),
    ("month", 1, 12),
    ("day_of_week", 0, 6),
)

# next_run gives up after ~31 days of minutes
MAX_SEARCH_MINUTES = 31 * 24 * 60

_MAX_SEARCH = timedelta(minutes=MAX_SEARCH_MINUTES)


def _is_number(raw: str) -> bool:
    return raw.isascii() and raw.isdigit()


def _to_int(token: str, field: str) -> int:
    raw = token.strip()
    if not _is_number(raw):
        raise InvalidCronError(field, token, "not a number")
    return int(raw)


def parse_field(text: str, field: str, low: int, high: int) -> Optional[FrozenSet[int]]:
    """Parse one cron field. Returns None for '*' (match anything), else the set of values."""
    raw = text.strip()
    if raw == "*":
        return None

    values = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue

        if part.startswith("*/"):
            step = _to_int(part[2:], field) if part[2:] else None
            if not step:
                raise InvalidCronError(field, part, "step must be a positive integer")
            values.update(range(low, high + 1, step))
            continue

        if "-" in part:
            a_raw, b_raw = part.split("-", 1)
            if not _is_number(a_raw.strip()) or not _is_number(b_raw.strip()):
                raise InvalidCronError(field, part, "bad range")
            a = max(low, min(high, int(a_raw)))
            b = max(low, min(high, int(b_raw)))
            values.update(range(min(a, b), max(a, b) + 1))
            continue

        value = _to_int(part, field)
        if value < low or value > high:
            raise InvalidCronError(field, part, f"out of range {low}-{high}")
        values.add(value)

    if not values:
        raise InvalidCronError(field, text, "empty")
    return frozenset(values)


def _as_utc(instant: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class CronExpression:
    """Parsed 5-field cron expression."""

    def __init__(
        self,
        source: str,
        minute: Optional[FrozenSet[int]],
        hour: Optional[FrozenSet[int]],
        day_of_month: Optional[FrozenSet[int]],
        month: Optional[FrozenSet[int]],
        day_of_week: Optional[FrozenSet[int]],
    ):
        self.source = source
        self.minute = minute
        self.hour = hour
        self.day_of_month = day_of_month
        self.month = month
        self.day_of_week = day_of_week

    @classmethod
    def parse(cls, text: str) -> "CronExpression":
        """
        Parse a cron string. Raises InvalidCronError naming the first bad field.

        Fields present are checked in order before the field count, so a bad first
        token is reported against the minute field.
        """
        parts = (text or "").split()
        parsed = []
        for (name, low, high), part in zip(FIELDS, parts):
            parsed.append(parse_field(part, name, low, high))
        if len(parts) != len(FIELDS):
            raise InvalidCronError("expression", text or "", f"expected 5 fields, got {len(parts)}")
        return cls(" ".join(parts), *parsed)

    @property
    def expression(self) -> str:
        """Normalized expression with every field spelled out as `*` or a value list."""
        return " ".join(
            _render(values)
            for values in (self.minute, self.hour, self.day_of_month, self.month, self.day_of_week)
        )

    def matches(self, instant: datetime) -> bool:
        """True if every field matches the instant's UTC components."""
        t = _as_utc(instant).replace(second=0, microsecond=0)
        try:
            return croniter.match(self.expression, t, day_or=False)
        except (CroniterBadCronError, CroniterBadDateError):
            return False

    def next_run(self, after: datetime) -> Optional[datetime]:
        """
        First matching UTC minute strictly after `after` (seconds truncated).

        Returns None when nothing matches within MAX_SEARCH_MINUTES.
        """
        start = _as_utc(after).replace(second=0, microsecond=0)
        try:
            it = croniter(self.expression, start, day_or=False, max_years_between_matches=1)
            result = it.get_next(datetime)
        except (CroniterBadCronError, CroniterBadDateError):
            return None
        result = _as_utc(result)
        if result - start > _MAX_SEARCH:
            return None
        return result

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CronExpression):
            return NotImplemented
        return (
            self.minute == other.minute
            and self.hour == other.hour
            and self.day_of_month == other.day_of_month
            and self.month == other.month
            and self.day_of_week == other.day_of_week
        )

    def __hash__(self) -> int:
        return hash((self.minute, self.hour, self.day_of_month, self.month, self.day_of_week))

    def __repr__(self) -> str:
        return f"CronExpression({self.source!r})"


def _render(values: Optional[FrozenSet[int]]) -> str:
    if values is None:
        return "*"
    return ",".join(str(v) for v in sorted(values))
