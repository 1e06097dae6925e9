"""
Cron expression evaluation for scheduled backups.

Expressions use the classic five crontab fields
(minute hour day-of-month month day-of-week) and are evaluated with
APScheduler's CronTrigger. Day-of-week follows crontab numbering
(0 or 7 = Sunday) and is translated to day names before it reaches
APScheduler, which counts from Monday.
"""

from datetime import datetime, timedelta
from typing import Optional

from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.util import astimezone


class CronError(ValueError):
    """Raised when a cron expression is invalid."""
    pass


DAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat')


def _day_value(text: str) -> int:
    if text in DAY_NAMES:
        return DAY_NAMES.index(text)
    if not text.isdigit():
        raise CronError(f"Invalid day-of-week value: '{text}'")
    value = int(text)
    if value > 7:
        raise CronError(f"Day-of-week value out of range (0-7): {value}")
    return value


def translate_day_of_week(field: str) -> str:
    """
    Convert a crontab day-of-week field into APScheduler day names.

    Args:
        field: Day-of-week field, e.g. '0', '1-5', '*/2', 'mon,wed'

    Returns:
        '*' or a comma-separated list of day names

    Raises:
        CronError: If the field is malformed
    """
    field = field.strip().lower()
    if field == '*':
        return '*'

    days = set()
    for token in field.split(','):
        if not token:
            raise CronError(f"Empty entry in day-of-week field: '{field}'")

        base, step = token, 1
        if '/' in token:
            base, step_text = token.split('/', 1)
            if not step_text.isdigit() or int(step_text) < 1:
                raise CronError(f"Invalid step in day-of-week field: '{token}'")
            step = int(step_text)

        if base == '*':
            start, end = 0, 6
        elif '-' in base:
            first, last = base.split('-', 1)
            start, end = _day_value(first), _day_value(last)
        else:
            start = _day_value(base)
            end = 6 if step > 1 else start

        if start > end:
            raise CronError(f"Invalid day-of-week range: '{token}'")

        for value in range(start, end + 1, step):
            days.add(value % 7)

    return ','.join(DAY_NAMES[day] for day in sorted(days))


class CronSchedule:
    """
    A parsed five-field cron expression bound to a timezone.

    When both day-of-month and day-of-week are restricted, a minute matches
    if either of them matches, as in crontab. A field starting with '*'
    (including '*/n') does not count as restricted, so it is AND-ed.
    """

    def __init__(self, expression: str, timezone='UTC'):
        self.expression = expression
        self.timezone = astimezone(timezone)

        fields = expression.split() if isinstance(expression, str) else []
        if len(fields) != 5:
            raise CronError(
                f"Invalid cron expression '{expression}': expected 5 fields "
                f"(minute hour day-of-month month day-of-week), got {len(fields)}"
            )

        minute, hour, day, month, day_of_week = fields

        try:
            day_names = translate_day_of_week(day_of_week)
            # Fields starting with '*' never widen the match, even when stepped
            if not day.startswith('*') and not day_of_week.startswith('*'):
                self._trigger = OrTrigger([
                    self._build(minute, hour, day, month, '*'),
                    self._build(minute, hour, '*', month, day_names),
                ])
            else:
                self._trigger = self._build(minute, hour, day, month, day_names)
        except CronError as e:
            raise CronError(f"Invalid cron expression '{expression}': {e}")
        except ValueError as e:
            raise CronError(f"Invalid cron expression '{expression}': {e}")

    def _build(self, minute, hour, day, month, day_of_week) -> CronTrigger:
        return CronTrigger(
            minute=minute,
            hour=hour,
            day=day,
            month=month,
            day_of_week=day_of_week,
            timezone=self.timezone
        )

    def truncate(self, moment: datetime) -> datetime:
        """Convert a timezone-aware datetime to this schedule's timezone, truncated to the minute."""
        if moment.tzinfo is None:
            raise ValueError("CronSchedule requires timezone-aware datetimes")
        return moment.astimezone(self.timezone).replace(second=0, microsecond=0)

    def matches(self, moment: datetime) -> bool:
        """Return True if the minute containing ``moment`` is a fire time."""
        minute = self.truncate(moment)
        return self._trigger.get_next_fire_time(None, minute) == minute

    def next_fire_time(self, after: datetime) -> Optional[datetime]:
        """Return the first fire time strictly after ``after``."""
        start = self.truncate(after) + timedelta(minutes=1)
        return self._trigger.get_next_fire_time(None, start)

    def __eq__(self, other):
        return (
            isinstance(other, CronSchedule)
            and other.expression == self.expression
            and str(other.timezone) == str(self.timezone)
        )

    def __hash__(self):
        return hash((self.expression, str(self.timezone)))

    def __repr__(self):
        return f'<CronSchedule {self.expression!r} tz={self.timezone}>'
