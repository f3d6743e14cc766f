"""
Cron scheduling for the periodic warm-cache sweep and event drain.

Used by `domain-freshness run` when no external cron service calls the
HTTP endpoint.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from .audit_logger import AuditLogger, LoggingMixin


class CronParseError(Exception):
    """Raised when a cron expression cannot be parsed."""

    def __init__(self, message: str, expression: str) -> None:
        self.message = message
        self.expression = expression
        super().__init__(f"{message}: '{expression}'")


@dataclass
class CronField:
    """A parsed cron field with its allowed values."""

    values: set[int]
    min_value: int
    max_value: int

    def matches(self, value: int) -> bool:
        return value in self.values

    @property
    def is_wildcard(self) -> bool:
        return self.values == set(range(self.min_value, self.max_value + 1))


@dataclass
class CronSchedule:
    """A parsed 5-field cron schedule."""

    minute: CronField
    hour: CronField
    day_of_month: CronField
    month: CronField
    day_of_week: CronField
    original_expression: str

    def matches(self, dt: datetime) -> bool:
        """Check if a datetime matches this schedule."""
        if self.day_of_month.is_wildcard and self.day_of_week.is_wildcard:
            day_match = True
        elif self.day_of_month.is_wildcard:
            day_match = self.day_of_week.matches(dt.weekday())
        elif self.day_of_week.is_wildcard:
            day_match = self.day_of_month.matches(dt.day)
        else:
            # Both restricted: standard cron ORs them
            day_match = self.day_of_month.matches(dt.day) or self.day_of_week.matches(dt.weekday())

        return (
            self.minute.matches(dt.minute)
            and self.hour.matches(dt.hour)
            and self.month.matches(dt.month)
            and day_match
        )

    def next_after(self, dt: datetime, limit_days: int = 366) -> Optional[datetime]:
        """First matching minute strictly after `dt`, or None within `limit_days`."""
        candidate = dt.replace(second=0, microsecond=0) + timedelta(minutes=1)
        end = candidate + timedelta(days=limit_days)
        while candidate < end:
            if self.matches(candidate):
                return candidate
            candidate += timedelta(minutes=1)
        return None


class CronParser:
    """Parser for cron expressions."""

    # (min, max, name)
    FIELD_DEFS = [
        (0, 59, "minute"),
        (0, 23, "hour"),
        (1, 31, "day_of_month"),
        (1, 12, "month"),
        (0, 6, "day_of_week"),  # 0 = Monday, as in datetime.weekday()
    ]

    MONTH_NAMES = {
        "jan": 1, "feb": 2, "mar": 3, "apr": 4,
        "may": 5, "jun": 6, "jul": 7, "aug": 8,
        "sep": 9, "oct": 10, "nov": 11, "dec": 12,
    }

    DOW_NAMES = {
        "mon": 0, "tue": 1, "wed": 2, "thu": 3,
        "fri": 4, "sat": 5, "sun": 6,
    }

    def parse(self, expression: str) -> CronSchedule:
        """
        Parse a cron expression into a CronSchedule.

        Supports 5-field expressions and 6-field ones whose leading seconds
        field is ignored. Special characters: `*`, `,`, `-` and `/`.

        Raises:
            CronParseError: If the expression is invalid
        """
        expression = expression.strip()
        if not expression:
            raise CronParseError("Empty cron expression", expression)

        fields = expression.split()
        if len(fields) == 6:
            fields = fields[1:]
        elif len(fields) != 5:
            raise CronParseError(
                f"Invalid number of fields (expected 5 or 6, got {len(fields)})",
                expression,
            )

        parsed_fields = []
        for field_str, (min_val, max_val, name) in zip(fields, self.FIELD_DEFS):
            try:
                parsed_fields.append(self._parse_field(field_str, min_val, max_val, name))
            except ValueError as e:
                raise CronParseError(f"Invalid {name} field: {e}", expression) from e

        return CronSchedule(*parsed_fields, original_expression=expression)

    def _parse_field(
        self, field_str: str, min_val: int, max_val: int, field_name: str
    ) -> CronField:
        values: set[int] = set()

        names = {"month": self.MONTH_NAMES, "day_of_week": self.DOW_NAMES}.get(field_name)
        if names:
            field_str = field_str.lower()
            for name, num in names.items():
                field_str = field_str.replace(name, str(num))

        for part in field_str.split(","):
            part = part.strip()
            if not part:
                continue

            step = 1
            if "/" in part:
                part, step_str = part.split("/", 1)
                try:
                    step = int(step_str)
                except ValueError as e:
                    raise ValueError(f"Invalid step value: {step_str}") from e
                if step < 1:
                    raise ValueError(f"Step must be >= 1, got {step}")

            if part == "*":
                values.update(range(min_val, max_val + 1, step))
                continue

            if "-" in part:
                start_str, end_str = part.split("-", 1)
                try:
                    start, end = int(start_str), int(end_str)
                except ValueError as e:
                    raise ValueError(f"Invalid range: {part}") from e
                for bound in (start, end):
                    if bound < min_val or bound > max_val:
                        raise ValueError(f"Range bound {bound} out of bounds [{min_val}-{max_val}]")
                if start > end:
                    raise ValueError(f"Range start {start} > end {end}")
                values.update(range(start, end + 1, step))
                continue

            try:
                val = int(part)
            except ValueError as e:
                raise ValueError(f"Invalid value: {part}") from e
            if val < min_val or val > max_val:
                raise ValueError(f"Value {val} out of bounds [{min_val}-{max_val}]")
            values.add(val)

        if not values:
            raise ValueError("No values parsed from field")

        return CronField(values=values, min_value=min_val, max_value=max_val)


@dataclass
class ScheduledTask:
    """A named cron job."""

    name: str
    schedule: CronSchedule
    callback: Callable[[], Awaitable[None]]
    last_run: Optional[datetime] = None
    enabled: bool = True
    failures: int = 0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Scheduler(LoggingMixin):
    """
    Cron-compatible runner for periodic jobs.

    Times are matched in UTC. A failing job is logged and does not stop the
    loop or the other jobs.
    """

    _component = "scheduler"

    def __init__(
        self,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
        check_interval_seconds: float = 60,
    ) -> None:
        self._parser = CronParser()
        self._tasks: dict[str, ScheduledTask] = {}
        self._running = False
        self._logger = logger
        self._clock = clock
        self._check_interval_seconds = check_interval_seconds

    def schedule(
        self,
        name: str,
        cron_expression: str,
        callback: Callable[[], Awaitable[None]],
    ) -> CronSchedule:
        """
        Register a job.

        Raises:
            CronParseError: If the cron expression is invalid
            ValueError: If a job with the same name already exists
        """
        if name in self._tasks:
            raise ValueError(f"Task '{name}' already exists")

        schedule = self._parser.parse(cron_expression)
        self._tasks[name] = ScheduledTask(name=name, schedule=schedule, callback=callback)
        return schedule

    def unschedule(self, name: str) -> bool:
        return self._tasks.pop(name, None) is not None

    def get_task(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def list_tasks(self) -> list[ScheduledTask]:
        return list(self._tasks.values())

    def enable_task(self, name: str) -> bool:
        if name in self._tasks:
            self._tasks[name].enabled = True
            return True
        return False

    def disable_task(self, name: str) -> bool:
        if name in self._tasks:
            self._tasks[name].enabled = False
            return True
        return False

    async def run_pending(self, now: Optional[datetime] = None) -> list[str]:
        """
        Run every enabled job matching `now` that has not run this minute.

        Returns:
            Names of the jobs that were started
        """
        now_minute = (now or self._clock()).replace(second=0, microsecond=0)
        started = []
        for task in list(self._tasks.values()):
            if not task.enabled or not task.schedule.matches(now_minute):
                continue
            if task.last_run is not None and task.last_run >= now_minute:
                continue
            task.last_run = now_minute
            started.append(task.name)
            try:
                await task.callback()
            except Exception as e:
                task.failures += 1
                self._log_error("Scheduled task failed", error=e, data={"task": task.name})
        return started

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the scheduler loop until stop() is called or stop_event is set."""
        self._running = True
        self._log_info("Scheduler started", {"tasks": [t.name for t in self._tasks.values()]})

        while self._running:
            await self.run_pending()
            if stop_event is not None:
                try:
                    await asyncio.wait_for(stop_event.wait(), self._check_interval_seconds)
                    break
                except asyncio.TimeoutError:
                    continue
            await asyncio.sleep(self._check_interval_seconds)

        self._running = False
        self._log_info("Scheduler stopped")

    def stop(self) -> None:
        self._running = False

    def is_running(self) -> bool:
        return self._running

    def parse_cron(self, expression: str) -> CronSchedule:
        """Parse an expression without registering a job (validation)."""
        return self._parser.parse(expression)
