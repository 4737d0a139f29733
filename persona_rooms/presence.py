"""Presence derived from a participant's daily schedule.

Schedules hold workday and holiday periods; which list applies is decided by
the caller (holiday calendars live outside the engine). Resolution rules:
  - no schedule at all           → online
  - no periods for the day kind  → fall back to workday periods, then online
  - hour not covered by a period → offline
"""

from __future__ import annotations

from datetime import datetime

from persona_rooms.models import Participant, Presence, PresencePeriod


def status_from_periods(periods: list[PresencePeriod], hour: int) -> Presence:
    for period in periods:
        if period.start <= period.end:
            if period.start <= hour < period.end:
                return period.status
        # wraps midnight, e.g. 23 → 2
        elif hour >= period.start or hour < period.end:
            return period.status
    return "offline"


def get_presence(
    participant: Participant,
    now: datetime | None = None,
    *,
    is_holiday: bool = False,
) -> Presence:
    """Return the participant's presence at `now` (defaults to local time)."""
    schedule = participant.schedule
    if schedule is None:
        return "online"
    hour = (now or datetime.now()).hour
    periods = schedule.holiday_periods if is_holiday else schedule.workday_periods
    if not periods:
        periods = schedule.workday_periods
    if not periods:
        return "online"
    return status_from_periods(periods, hour)
