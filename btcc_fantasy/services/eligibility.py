"""
Race eligibility gate.

``evaluate`` is a pure function of the race and the current instant.  It is
used by the selection store before every mutation, by the synchronizer
before every save, by the background re-check timer and by the server when
it accepts or rejects a roster.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from btcc_fantasy.helpers.timeutil import ensure_utc
from btcc_fantasy.models import EventDescriptor

NO_RACE = "no-race"
LOCKED = "locked"
EXPIRED = "expired"
URGENT = "urgent"
OPEN = "open"

# highest priority first
STATUS_PRIORITY = (NO_RACE, LOCKED, EXPIRED, URGENT, OPEN)


@dataclass(frozen=True)
class EligibilityVerdict:
    status: str
    reason: str
    can_submit: bool
    time_remaining: Optional[timedelta] = None

    @property
    def hours_remaining(self) -> int:
        if not self.time_remaining:
            return 0
        return int(self.time_remaining.total_seconds() // 3600)


def evaluate(
    event: Optional[EventDescriptor],
    now: datetime,
    urgent_window: timedelta = timedelta(hours=24),
) -> EligibilityVerdict:
    if event is None:
        return EligibilityVerdict(NO_RACE, "No races available for submissions", False)
    if not event.events:
        return EligibilityVerdict(NO_RACE, f"{event.name} has no scheduled sessions", False)
    if event.is_locked:
        return EligibilityVerdict(LOCKED, "Race is locked by administrators", False, timedelta(0))

    remaining = ensure_utc(event.submission_deadline) - ensure_utc(now)
    if remaining < timedelta(0):
        return EligibilityVerdict(EXPIRED, "Submission deadline has passed", False, timedelta(0))

    hours = int(remaining.total_seconds() // 3600)
    if remaining < urgent_window:
        return EligibilityVerdict(URGENT, f"Deadline approaching! {hours}h remaining", True, remaining)
    return EligibilityVerdict(OPEN, f"{hours}h until deadline", True, remaining)


@dataclass(frozen=True)
class RaceSelection:
    race: Optional[EventDescriptor]
    source: str  # "upcoming" | "recent" | "none"
    warning: Optional[str] = None


def select_current_event(races: Iterable[EventDescriptor], now: datetime) -> RaceSelection:
    """
    Pick the race a selection session should target.

    The earliest race whose deadline has not passed and that is not locked
    wins.  Failing that the most recent race is returned with a warning so
    the page can still show the last roster; a race without scheduled
    sessions is never picked.
    """
    candidates: List[EventDescriptor] = sorted(
        (r for r in races if r.events),
        key=lambda r: ensure_utc(r.submission_deadline),
    )
    if not candidates:
        return RaceSelection(None, "none")

    now = ensure_utc(now)
    for race in candidates:
        if ensure_utc(race.submission_deadline) >= now and not race.is_locked:
            return RaceSelection(race, "upcoming")

    return RaceSelection(
        candidates[-1],
        "recent",
        "Using most recent race - submission may not be available",
    )
