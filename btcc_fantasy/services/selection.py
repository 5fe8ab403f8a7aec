import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from btcc_fantasy.helpers.timeutil import format_deadline
from btcc_fantasy.models import Competitor, EventDescriptor, Participant
from btcc_fantasy.services import composition
from btcc_fantasy.services.composition import GuardResult
from btcc_fantasy.services.eligibility import EligibilityVerdict
from btcc_fantasy.services.rules import RosterRules

logger = logging.getLogger(__name__)


class SelectionStore:
    """
    The participant's in-progress team.

    Only the methods below mutate the selection and each one checks the
    race gate and the incremental composition guard first; a rejected call
    leaves the team exactly as it was.  ``verdict`` is a callable so the
    store always sees the latest gate evaluation.
    """

    def __init__(
        self,
        participant: Participant,
        verdict: Callable[[], Optional[EligibilityVerdict]],
        rules: Optional[RosterRules] = None,
    ) -> None:
        self.participant = participant
        self.rules = rules or RosterRules.from_dict()
        self._verdict = verdict
        self._selected: List[Competitor] = []

    def _gate(self) -> GuardResult:
        verdict = self._verdict()
        if verdict is None:
            return GuardResult(False, "Race status not available")
        if not verdict.can_submit:
            return GuardResult(False, verdict.reason or "Cannot modify roster")
        return GuardResult(True)

    def can_modify(self) -> bool:
        return self._gate().accepted

    def add(self, competitor: Competitor) -> GuardResult:
        gate = self._gate()
        if not gate.accepted:
            return gate
        guard = composition.check_add(self._selected, competitor, self.participant.budget, self.rules)
        if not guard.accepted:
            logger.debug("Rejected add of %s: %s", competitor.id, guard.reason)
            return guard
        self._selected.append(competitor)
        return guard

    def remove(self, competitor_id: str) -> GuardResult:
        gate = self._gate()
        if not gate.accepted:
            return gate
        guard = composition.check_remove(self._selected, competitor_id)
        if guard.accepted:
            self._selected = [c for c in self._selected if c.id != competitor_id]
        return guard

    def clear(self) -> GuardResult:
        gate = self._gate()
        if gate.accepted:
            self._selected = []
        return gate

    def replace(self, competitors: Sequence[Competitor]) -> List[Competitor]:
        """
        Load a persisted team.  Not gated by the race, since a locked race
        still shows its saved roster, but each driver goes through the add
        guard so duplicates, overflow and overspend never get in.  Returns
        the drivers that were refused.
        """
        self._selected = []
        refused = []
        for competitor in competitors:
            guard = composition.check_add(self._selected, competitor, self.participant.budget, self.rules)
            if guard.accepted:
                self._selected.append(competitor)
            else:
                refused.append(competitor)
        if refused:
            logger.warning("Dropped %d driver(s) while loading saved roster", len(refused))
        return refused

    def discard(self) -> None:
        self._selected = []

    def set_budget(self, budget: float) -> None:
        self.participant = self.participant.model_copy(update={"budget": budget})

    # -- read side --------------------------------------------------------

    def competitors(self) -> List[Competitor]:
        return list(self._selected)

    def ids(self) -> List[str]:
        return [c.id for c in self._selected]

    def contains(self, competitor_id: str) -> bool:
        return any(c.id == competitor_id for c in self._selected)

    def __len__(self) -> int:
        return len(self._selected)

    def total_cost(self) -> float:
        return composition.total_cost(self._selected)

    def remaining_budget(self) -> float:
        return self.participant.budget - self.total_cost()

    def categories(self) -> List[str]:
        return composition.present_categories(self._selected)

    def missing_categories(self) -> List[str]:
        return composition.missing_categories(self._selected, self.rules.required_categories)

    def summary(self, race: Optional[EventDescriptor], is_update: bool) -> Dict[str, Any]:
        """Data for the confirmation prompt shown before a save."""
        total = self.total_cost()
        return {
            "race": {
                "name": race.name,
                "round": race.round_number,
                "location": race.location,
                "deadline": format_deadline(race.submission_deadline),
            } if race else None,
            "drivers": [
                {"name": c.name, "value": c.value, "categories": ", ".join(c.categories)}
                for c in self._selected
            ],
            "total_drivers": len(self._selected),
            "total_value": total,
            "budget_used": total,
            "budget_remaining": self.participant.budget - total,
            "categories": sorted(self.categories()),
            "is_update": is_update,
        }


def filter_competitors(
    catalog: Sequence[Competitor],
    category: Optional[str] = None,
    search: Optional[str] = None,
    exclude_ids: Sequence[str] = (),
) -> List[Competitor]:
    term = (search or "").strip().casefold()
    excluded = set(exclude_ids)
    out = []
    for c in catalog:
        if c.id in excluded:
            continue
        if category and category != "all" and category not in c.categories:
            continue
        if term and term not in c.name.casefold():
            continue
        out.append(c)
    return out
