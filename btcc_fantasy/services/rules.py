#services/rules.py
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple

from btcc_fantasy import config

DEFAULT_RULES: Dict[str, Any] = {
    "roster": {
        "size": config.ROSTER_SIZE,         # exactly this many to submit, at most this many while building
        "required_categories": list(config.REQUIRED_CATEGORIES),
        "max_categories_per_driver": 2,
    },
    "deadline": {
        "urgent_window_hours": config.URGENT_WINDOW_HOURS,
    },
    "elevation": {
        "minutes": config.ELEVATION_MINUTES,
    },
}


@dataclass(frozen=True)
class RosterRules:
    """Parameters shared by the validator, the gate and the server."""

    max_size: int = 6
    required_categories: Tuple[str, ...] = ("M", "JS", "I")
    max_categories_per_driver: int = 2
    urgent_window: timedelta = timedelta(hours=24)

    @classmethod
    def from_dict(cls, rules: Optional[Dict[str, Any]] = None) -> "RosterRules":
        rules = rules or DEFAULT_RULES
        roster = rules.get("roster", {})
        deadline = rules.get("deadline", {})
        return cls(
            max_size=int(roster.get("size", 6)),
            required_categories=tuple(roster.get("required_categories", ("M", "JS", "I"))),
            max_categories_per_driver=int(roster.get("max_categories_per_driver", 2)),
            urgent_window=timedelta(hours=int(deadline.get("urgent_window_hours", 24))),
        )


def elevation_duration(rules: Optional[Dict[str, Any]] = None) -> timedelta:
    rules = rules or DEFAULT_RULES
    return timedelta(minutes=int(rules.get("elevation", {}).get("minutes", 15)))
