"""
Roster composition rules.

Two entry points:

* ``validate`` is the full pass run before a submission.  It collects every
  violation (never short-circuits) so the page can list all problems at
  once.  Order: race availability, size, budget, missing categories,
  duplicates.
* ``check_add`` / ``check_remove`` are the incremental guards the selection
  store runs before each mutation.  A rejected add leaves the selection
  untouched.
"""

from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence

from btcc_fantasy.models import Competitor
from btcc_fantasy.services.eligibility import EligibilityVerdict
from btcc_fantasy.services.rules import RosterRules


@dataclass(frozen=True)
class CompositionVerdict:
    valid: bool
    violations: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class GuardResult:
    accepted: bool
    reason: Optional[str] = None


def format_money(value: float) -> str:
    return f"£{value:,.2f}"


def total_cost(selection: Iterable[Competitor]) -> float:
    return sum(c.value or 0 for c in selection)


def present_categories(selection: Iterable[Competitor]) -> List[str]:
    seen: List[str] = []
    for c in selection:
        for cat in c.categories:
            if cat not in seen:
                seen.append(cat)
    return seen


def missing_categories(selection: Iterable[Competitor], required: Sequence[str]) -> List[str]:
    present = set(present_categories(selection))
    return [cat for cat in required if cat not in present]


def _list_duplicates(ids: Sequence[str]) -> List[str]:
    seen, dups = set(), []
    for x in ids:
        if x in seen and x not in dups:
            dups.append(x)
        seen.add(x)
    return dups


def validate(
    selection: Sequence[Competitor],
    budget: float,
    *,
    verdict: Optional[EligibilityVerdict] = None,
    rules: Optional[RosterRules] = None,
    check_race: bool = True,
) -> CompositionVerdict:
    rules = rules or RosterRules.from_dict()
    violations: List[str] = []

    if check_race:
        if verdict is None:
            violations.append("No race available for submissions")
        elif not verdict.can_submit:
            violations.append(verdict.reason or "Cannot submit for this race")

    size = len(selection)
    if size < rules.max_size:
        violations.append(
            f"Team is below the required size: select exactly {rules.max_size} drivers (currently has {size})"
        )
    elif size > rules.max_size:
        violations.append(
            f"Team cannot have more than {rules.max_size} drivers (currently has {size})"
        )

    cost = total_cost(selection)
    if cost > budget:
        violations.append(
            f"Team value ({format_money(cost)}) exceeds budget ({format_money(budget)})"
        )

    missing = missing_categories(selection, rules.required_categories)
    if missing:
        violations.append(f"Team missing required categories: {', '.join(missing)}")

    dups = _list_duplicates([c.id for c in selection])
    if dups:
        violations.append(f"Team contains duplicate drivers: {', '.join(dups)}")

    return CompositionVerdict(valid=not violations, violations=violations)


def check_add(
    selection: Sequence[Competitor],
    competitor: Competitor,
    budget: float,
    rules: Optional[RosterRules] = None,
) -> GuardResult:
    rules = rules or RosterRules.from_dict()
    if any(c.id == competitor.id for c in selection):
        return GuardResult(False, f"{competitor.name} is already selected")
    if len(selection) >= rules.max_size:
        return GuardResult(False, f"Team is full ({rules.max_size} drivers)")
    projected = total_cost(selection) + (competitor.value or 0)
    if projected > budget:
        return GuardResult(
            False,
            f"Cannot afford {competitor.name}: team value would be {format_money(projected)} "
            f"against a budget of {format_money(budget)}",
        )
    return GuardResult(True)


def check_remove(selection: Sequence[Competitor], competitor_id: str) -> GuardResult:
    if not any(c.id == competitor_id for c in selection):
        return GuardResult(False, "Driver is not in the team")
    return GuardResult(True)
