"""Rule evaluation logic for reservations."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from booking.errors import MissingRequiredEndTime
from booking.models import DURATION_FIXED, DURATION_FLEXIBLE, DURATION_FULL_DAY
from booking.status import StatusMachine, allowed_create_statuses
from booking.windows import add_minutes, hours_until


@dataclass
class RuleCheckResult:
    allowed: bool
    reason: str | None = None


@dataclass(frozen=True)
class EndTimeResult:
    end_time: datetime
    duration_minutes: int


def _minutes_between(start: datetime, end: datetime) -> int:
    return round((end - start).total_seconds() / 60)


class RuleEngine:
    @staticmethod
    def compute_end_time(
        duration_type: str,
        service_duration: int,
        start_time: datetime,
        end_time: datetime | None = None,
    ) -> EndTimeResult:
        if duration_type == DURATION_FULL_DAY:
            end_of_day = start_time.replace(hour=23, minute=59, second=59, microsecond=999000)
            return EndTimeResult(end_time=end_of_day, duration_minutes=_minutes_between(start_time, end_of_day))

        if duration_type == DURATION_FLEXIBLE:
            if end_time is None:
                raise MissingRequiredEndTime()
            return EndTimeResult(end_time=end_time, duration_minutes=_minutes_between(start_time, end_time))

        if duration_type != DURATION_FIXED:
            raise ValueError(f"Unknown duration type: {duration_type}")

        return EndTimeResult(end_time=add_minutes(start_time, service_duration), duration_minutes=service_duration)

    @staticmethod
    def check_create_status(status: str, machine: StatusMachine, *, privileged: bool) -> RuleCheckResult:
        allowed = allowed_create_statuses(machine, privileged=privileged)
        if status not in allowed:
            quoted = " or ".join(f'"{value}"' for value in allowed)
            return RuleCheckResult(
                allowed=False,
                reason=f'New reservations cannot start as "{status}"; use {quoted}.',
            )
        return RuleCheckResult(allowed=True)

    @staticmethod
    def check_cancellation_notice(start_time: datetime, notice_period_hours: int, now: datetime | None = None) -> RuleCheckResult:
        remaining = hours_until(start_time, now)
        if remaining < notice_period_hours:
            return RuleCheckResult(
                allowed=False,
                reason=(
                    f"Cancellations require at least {notice_period_hours} hours notice "
                    f"({round(remaining)} hours remaining)."
                ),
            )
        return RuleCheckResult(allowed=True)
