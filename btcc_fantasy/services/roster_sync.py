"""
Create-or-update reconciliation between the selection and the backend.

The backend keeps at most one roster per (participant, race) but does not
enforce it with an index, so this class always knows, before writing,
whether a roster already exists: ``load`` queries first, and every
successful ``save`` records the returned roster as the target for the next
one.  Calls are serialised with a lock; a call arriving while another is
outstanding is refused rather than queued behind it.
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence

from pydantic import ValidationError

from btcc_fantasy.client.api import ApiClient
from btcc_fantasy.errors import ApiResult, ErrorCategory, FailureKind
from btcc_fantasy.models import Competitor, EventDescriptor, Participant, Roster
from btcc_fantasy.services import composition
from btcc_fantasy.services.eligibility import EligibilityVerdict
from btcc_fantasy.services.rules import RosterRules
from btcc_fantasy.services.selection import SelectionStore

logger = logging.getLogger(__name__)

BUSY_MESSAGE = "A save or load is already in progress for this team"


class RosterSynchronizer:
    def __init__(
        self,
        api: ApiClient,
        rules: Optional[RosterRules] = None,
        verdict: Callable[[], Optional[EligibilityVerdict]] = lambda: None,
    ) -> None:
        self._api = api
        self.rules = rules or RosterRules.from_dict()
        self._verdict = verdict
        self._lock = asyncio.Lock()
        self.target: Optional[Roster] = None

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    def target_for(self, participant: Participant, event: Optional[EventDescriptor]) -> Optional[Roster]:
        """The known roster for this (participant, race), if any."""
        target = self.target
        if target is None or event is None:
            return None
        if target.user != participant.id or target.race != event.id:
            return None
        return target

    def _busy_result(self) -> ApiResult:
        return ApiResult.fail(BUSY_MESSAGE, ErrorCategory.CONSTRAINT, code="IN_PROGRESS")

    @staticmethod
    def build_payload(participant: Participant, event: EventDescriptor, selection: Sequence[Competitor]) -> Dict[str, Any]:
        return {
            "user": participant.id,
            "race": event.id,
            "drivers": [c.id for c in selection],
            "budget_used": composition.total_cost(selection),
            "points_earned": 0,
        }

    @staticmethod
    def map_drivers(roster: Roster, catalog: Sequence[Competitor]) -> List[Competitor]:
        by_id = {c.id: c for c in catalog}
        return [by_id[d] for d in roster.drivers if d in by_id]

    async def load(
        self,
        participant: Participant,
        event: EventDescriptor,
        catalog: Sequence[Competitor],
        store: Optional[SelectionStore] = None,
    ) -> ApiResult:
        if self.busy:
            return self._busy_result()
        async with self._lock:
            result = await self._api.list_rosters(user=participant.id, race=event.id)
            if not result.success:
                return result

            docs = (result.data or {}).get("rosters") or []
            if len(docs) > 1:
                logger.error(
                    "Found %d rosters for user %s and race %s", len(docs), participant.id, event.id
                )
                return ApiResult.fail(
                    f"Found {len(docs)} saved teams for this race; expected at most one",
                    ErrorCategory.TRANSPORT,
                    status=result.status,
                    code="DUPLICATE_ROSTERS",
                    kind=FailureKind.UNEXPECTED,
                )

            if not docs:
                self.target = None
                if store is not None:
                    store.discard()
                return ApiResult.ok({"roster": None, "drivers": []}, status=result.status)

            try:
                roster = Roster.model_validate(docs[0])
            except ValidationError as exc:
                return ApiResult.fail(
                    f"Malformed roster from server: {exc.error_count()} error(s)",
                    ErrorCategory.TRANSPORT,
                    status=result.status,
                    kind=FailureKind.UNEXPECTED,
                )

            self.target = roster
            drivers = self.map_drivers(roster, catalog)
            dropped = len(roster.drivers) - len(drivers)
            if dropped:
                logger.info("Saved roster %s references %d driver(s) no longer in the catalog", roster.id, dropped)
            if store is not None:
                store.replace(drivers)
            return ApiResult.ok({"roster": roster, "drivers": drivers}, status=result.status)

    async def save(self, participant: Participant, event: Optional[EventDescriptor], selection: Sequence[Competitor]) -> ApiResult:
        verdict = self._verdict()
        check = composition.validate(selection, participant.budget, verdict=verdict, rules=self.rules)
        if event is None or verdict is None or not verdict.can_submit:
            return ApiResult.fail(
                check.violations[0] if check.violations else "No race available for submissions",
                ErrorCategory.ELIGIBILITY,
                data={"violations": check.violations},
            )
        if not check.valid:
            return ApiResult.fail(
                check.violations[0],
                ErrorCategory.CONSTRAINT,
                data={"violations": check.violations},
            )

        if self.busy:
            return self._busy_result()
        async with self._lock:
            payload = self.build_payload(participant, event, selection)
            target = self.target_for(participant, event)
            if target is None and self.target is not None:
                logger.info(
                    "Known roster %s belongs to race %s, not %s; creating instead", self.target.id, self.target.race, event.id
                )
            if target is not None:
                result = await self._api.update_roster(target.id, payload)
                action = "updated"
            else:
                result = await self._api.create_roster(payload)
                action = "saved"
            if not result.success:
                return result

            try:
                roster = Roster.model_validate((result.data or {}).get("roster"))
            except ValidationError:
                # the write happened; the next load will find the roster
                self.target = None
                return ApiResult.fail(
                    "Team was saved but the server response was malformed. Please refresh.",
                    ErrorCategory.TRANSPORT,
                    status=result.status,
                    kind=FailureKind.UNEXPECTED,
                )
            self.target = roster
            logger.info("Roster %s %s for user %s race %s", roster.id, action, participant.id, event.id)
            return ApiResult.ok(
                {"roster": roster, "action": action, "message": f"Team {action} successfully for {event.name}!"},
                status=result.status,
            )

    async def preflight(
        self, participant: Participant, event: Optional[EventDescriptor], selection: Sequence[Competitor]
    ) -> ApiResult:
        """Ask the server to run its submission checks without writing anything."""
        payload = {"user": participant.id, "drivers": [c.id for c in selection]}
        if event is not None:
            payload["race"] = event.id
        result = await self._api.validate_roster(payload)
        if not result.success:
            return result
        validation = (result.data or {}).get("validation") or {}
        errors = validation.get("errors") or []
        if not validation.get("is_valid") or errors:
            return ApiResult.fail(
                errors[0] if errors else "Team failed server validation",
                ErrorCategory.CONSTRAINT,
                status=result.status,
                data={"violations": errors, "validation": validation},
            )
        return ApiResult.ok(validation, status=result.status)

    async def delete(self) -> ApiResult:
        if self.target is None:
            return ApiResult.fail("No saved team to delete", ErrorCategory.CONSTRAINT)
        if self.busy:
            return self._busy_result()
        async with self._lock:
            result = await self._api.delete_roster(self.target.id)
            if result.success:
                self.target = None
            return result

    async def history(self, participant: Participant) -> ApiResult:
        result = await self._api.user_rosters(participant.id)
        if not result.success:
            return result
        try:
            rosters = [Roster.model_validate(doc) for doc in (result.data or {}).get("rosters") or []]
        except ValidationError as exc:
            return ApiResult.fail(
                f"Malformed roster from server: {exc.error_count()} error(s)",
                ErrorCategory.TRANSPORT,
                status=result.status,
                kind=FailureKind.UNEXPECTED,
            )
        return ApiResult.ok(rosters, status=result.status)

    def reset(self) -> None:
        self.target = None
