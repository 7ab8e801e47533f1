"""Five-field cron expressions, evaluated in UTC.

Supports ``*``, numbers, ranges (``1-5``), steps (``*/15``, ``10-40/10``),
lists (``1,15,30``) and three-letter month/weekday names. Day-of-week 0 and
7 are both Sunday. When both day-of-month and day-of-week are restricted a
day matches if either does, as in classic cron.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

_MONTHS = {
    name: i
    for i, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun",
         "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}
_WEEKDAYS = {
    name: i for i, name in enumerate(["sun", "mon", "tue", "wed", "thu", "fri", "sat"])
}

# (min, max, names) per field
_FIELDS = (
    (0, 59, {}),
    (0, 23, {}),
    (1, 31, {}),
    (1, 12, _MONTHS),
    (0, 7, _WEEKDAYS),
)

# Feb 29 can be eight years away (no leap day in 2100, 2200, 2300)
_HORIZON = timedelta(days=9 * 366)


class CronError(ValueError):
    """Invalid cron expression."""


def _value(token: str, lo: int, hi: int, names: dict[str, int]) -> int:
    token = token.lower()
    if token in names:
        return names[token]
    try:
        value = int(token)
    except ValueError:
        raise CronError(f"invalid cron value {token!r}") from None
    if not lo <= value <= hi:
        raise CronError(f"cron value {value} outside {lo}-{hi}")
    return value


def _parse_field(text: str, lo: int, hi: int, names: dict[str, int]) -> frozenset[int]:
    values: set[int] = set()
    for part in text.split(","):
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            try:
                step = int(step_text)
            except ValueError:
                raise CronError(f"invalid cron step {step_text!r}") from None
            if step < 1:
                raise CronError("cron step must be >= 1")
        if part == "*":
            start, end = lo, hi
        elif "-" in part:
            a, b = part.split("-", 1)
            start, end = _value(a, lo, hi, names), _value(b, lo, hi, names)
            if start > end:
                raise CronError(f"empty cron range {part!r}")
        else:
            start = _value(part, lo, hi, names)
            end = hi if step > 1 else start
        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronSchedule:
    """Parsed cron expression. ``next_after`` is a pure function of its input."""

    expression: str
    minutes: frozenset[int]
    hours: frozenset[int]
    days: frozenset[int]
    months: frozenset[int]
    weekdays: frozenset[int]
    days_restricted: bool
    weekdays_restricted: bool

    @classmethod
    def parse(cls, expression: str) -> "CronSchedule":
        fields = expression.split()
        if len(fields) != 5:
            raise CronError(f"cron expression needs 5 fields, got {len(fields)}")
        parsed = [
            _parse_field(text, lo, hi, names)
            for text, (lo, hi, names) in zip(fields, _FIELDS)
        ]
        # cron uses 0=Sunday, Python's weekday() uses 0=Monday
        weekdays = frozenset((d - 1) % 7 for d in parsed[4])
        return cls(
            expression=expression,
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            days_restricted=fields[2] != "*",
            weekdays_restricted=fields[4] != "*",
        )

    def _day_matches(self, ts: datetime) -> bool:
        dom = ts.day in self.days
        dow = ts.weekday() in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return dom or dow
        return dom and dow

    def next_after(self, ts: datetime) -> datetime:
        """First matching minute strictly after ``ts`` (UTC)."""
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=timezone.utc)
        candidate = ts.astimezone(timezone.utc).replace(second=0, microsecond=0)
        candidate += timedelta(minutes=1)

        limit = candidate + _HORIZON
        while candidate <= limit:
            if candidate.month not in self.months:
                year = candidate.year + (candidate.month == 12)
                month = candidate.month % 12 + 1
                candidate = candidate.replace(
                    year=year, month=month, day=1, hour=0, minute=0
                )
                continue
            if not self._day_matches(candidate):
                candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
                continue
            if candidate.hour not in self.hours:
                candidate = candidate.replace(minute=0) + timedelta(hours=1)
                continue
            if candidate.minute not in self.minutes:
                candidate += timedelta(minutes=1)
                continue
            return candidate

        raise CronError(f"cron expression {self.expression!r} never fires")
