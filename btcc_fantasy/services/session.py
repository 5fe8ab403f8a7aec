"""
Per-page selection session.

Owns everything the driver-selection page used to keep in module globals:
the participant, the target race and its latest eligibility verdict, the
driver catalog, the selection store, the synchronizer, the elevation
session and the two background timers.  Construct one when the page opens,
``await start()``, and ``await stop()`` on navigation away or logout.
"""

import asyncio
import logging
from datetime import datetime
from typing import Callable, List, Optional

from pydantic import ValidationError

from btcc_fantasy import config
from btcc_fantasy.client.api import ApiClient
from btcc_fantasy.errors import ApiResult, ErrorCategory, FailureKind
from btcc_fantasy.helpers.timeutil import utcnow
from btcc_fantasy.models import Competitor, EventDescriptor, Participant
from btcc_fantasy.services import composition
from btcc_fantasy.services.catalog_admin import CatalogAdminOperations
from btcc_fantasy.services.composition import CompositionVerdict, GuardResult
from btcc_fantasy.services.elevation import ElevationSession
from btcc_fantasy.services.eligibility import NO_RACE, EligibilityVerdict, evaluate, select_current_event
from btcc_fantasy.services.roster_sync import RosterSynchronizer
from btcc_fantasy.services.rules import RosterRules, elevation_duration
from btcc_fantasy.services.selection import SelectionStore, filter_competitors

logger = logging.getLogger(__name__)

# server-side rejections that mean our race metadata is stale
_STALE_RACE_KINDS = (FailureKind.DEADLINE, FailureKind.LOCKED, FailureKind.RACE)


def _noop(*args, **kwargs) -> None:
    return None


class SelectionSession:
    def __init__(
        self,
        api: ApiClient,
        participant: Participant,
        *,
        rules: Optional[RosterRules] = None,
        clock: Callable[[], datetime] = utcnow,
        notify: Callable[[str, str], None] = _noop,
        on_elevation_required: Callable[[], None] = _noop,
        poll_interval: float = config.ELIGIBILITY_POLL_SECONDS,
        sweep_interval: float = config.ELEVATION_SWEEP_SECONDS,
    ) -> None:
        self.api = api
        self.rules = rules or RosterRules.from_dict()
        self._clock = clock
        self._notify = notify
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval

        self.race: Optional[EventDescriptor] = None
        self.race_warning: Optional[str] = None
        self.verdict: Optional[EligibilityVerdict] = None
        self.catalog: List[Competitor] = []

        self.store = SelectionStore(participant, lambda: self.verdict, self.rules)
        self.sync = RosterSynchronizer(api, self.rules, lambda: self.verdict)
        self.elevation = ElevationSession(
            api,
            elevation_duration(),
            clock=clock,
            notify=notify,
            on_elevation_required=on_elevation_required,
        )
        self.admin = CatalogAdminOperations(api, self.elevation, self.load_catalog)

        self._poller: Optional[asyncio.Task] = None
        self.active = False

    @property
    def participant(self) -> Participant:
        return self.store.participant

    # -- lifecycle --------------------------------------------------------

    async def start(self) -> ApiResult:
        result = await self.refresh_all()
        self.active = True
        self._start_timers()
        return result

    async def pause(self) -> None:
        """Page went to the background: stop the timers, keep the state."""
        await self._stop_timers()

    async def resume(self) -> ApiResult:
        """Back in the foreground: re-check auth and the deadline at once, restart timers."""
        auth = await self.api.verify()
        if not auth.success and auth.category == ErrorCategory.AUTHORIZATION:
            self._notify("error", auth.user_message)
            return auth
        self.evaluate_eligibility()
        self._start_timers()
        return ApiResult.ok({"verdict": self.verdict})

    async def stop(self) -> None:
        """Session end (navigation away, logout)."""
        await self._stop_timers()
        await self.elevation.teardown()
        self.store.discard()
        self.sync.reset()
        self.active = False

    async def on_network_restored(self) -> ApiResult:
        logger.info("Network restored; resynchronising session")
        return await self.refresh_all()

    def _start_timers(self) -> None:
        if self._poller is None or self._poller.done():
            self._poller = asyncio.get_running_loop().create_task(self._poll())
        self.elevation.start_sweep(self.sweep_interval)

    async def _stop_timers(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
            try:
                await self._poller
            except asyncio.CancelledError:
                pass
            self._poller = None
        await self.elevation.stop_sweep()

    @property
    def polling(self) -> bool:
        return self._poller is not None and not self._poller.done()

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            self.evaluate_eligibility()

    # -- loading ----------------------------------------------------------

    def evaluate_eligibility(self) -> EligibilityVerdict:
        previous = self.verdict
        self.verdict = evaluate(self.race, self._clock(), self.rules.urgent_window)
        if previous is not None and previous.can_submit and not self.verdict.can_submit:
            self._notify("warning", self.verdict.reason)
        return self.verdict

    async def load_participant(self) -> ApiResult:
        result = await self.api.verify()
        if not result.success:
            return result
        try:
            participant = Participant.model_validate((result.data or {}).get("user"))
        except ValidationError:
            return ApiResult.fail("Malformed user from server", ErrorCategory.TRANSPORT, kind=FailureKind.UNEXPECTED)
        self.store.set_budget(participant.budget)
        return ApiResult.ok(participant)

    async def load_race_information(self) -> ApiResult:
        result = await self.api.list_races()
        if not result.success:
            self.race = None
            self.verdict = EligibilityVerdict(NO_RACE, f"Error loading race information: {result.error}", False)
            return result
        try:
            races = [EventDescriptor.model_validate(doc) for doc in (result.data or {}).get("races") or []]
        except ValidationError:
            self.race = None
            self.verdict = EligibilityVerdict(NO_RACE, "Error loading race information", False)
            return ApiResult.fail("Malformed race list from server", ErrorCategory.TRANSPORT, kind=FailureKind.UNEXPECTED)

        picked = select_current_event(races, self._clock())
        self.race = picked.race
        self.race_warning = picked.warning
        if picked.warning:
            self._notify("warning", picked.warning)
        self.evaluate_eligibility()
        return ApiResult.ok({"race": self.race, "source": picked.source, "verdict": self.verdict})

    async def load_catalog(self) -> ApiResult:
        result = await self.api.list_drivers()
        if not result.success:
            self._notify("error", f"Failed to load drivers: {result.error}")
            return result
        try:
            self.catalog = [Competitor.model_validate(doc) for doc in (result.data or {}).get("drivers") or []]
        except ValidationError:
            return ApiResult.fail("Malformed driver list from server", ErrorCategory.TRANSPORT, kind=FailureKind.UNEXPECTED)
        return ApiResult.ok(self.catalog)

    async def load_roster(self) -> ApiResult:
        if self.race is None:
            self.sync.reset()
            self.store.discard()
            return ApiResult.ok({"roster": None, "drivers": []})
        result = await self.sync.load(self.participant, self.race, self.catalog, self.store)
        if result.success and result.data["roster"] is not None:
            self._notify("info", f"Loaded your existing team for {self.race.name}.")
        return result

    async def refresh_all(self) -> ApiResult:
        # participant first so a budget changed server-side is picked up
        for step in (self.load_participant, self.load_race_information, self.load_catalog, self.load_roster):
            result = await step()
            if not result.success:
                return result
        return ApiResult.ok({"race": self.race, "verdict": self.verdict})

    # -- selection --------------------------------------------------------

    def add(self, competitor_id: str) -> GuardResult:
        competitor = next((c for c in self.catalog if c.id == competitor_id), None)
        if competitor is None:
            return GuardResult(False, "Driver not found in the catalog")
        return self.store.add(competitor)

    def remove(self, competitor_id: str) -> GuardResult:
        return self.store.remove(competitor_id)

    def clear(self) -> GuardResult:
        return self.store.clear()

    def available(self, category: Optional[str] = None, search: Optional[str] = None) -> List[Competitor]:
        return filter_competitors(self.catalog, category, search, exclude_ids=self.store.ids())

    def validate(self) -> CompositionVerdict:
        return composition.validate(
            self.store.competitors(), self.participant.budget, verdict=self.verdict, rules=self.rules
        )

    def summary(self) -> dict:
        return self.store.summary(self.race, is_update=self.sync.target_for(self.participant, self.race) is not None)

    async def check_with_server(self) -> ApiResult:
        return await self.sync.preflight(self.participant, self.race, self.store.competitors())

    async def save(self) -> ApiResult:
        self.evaluate_eligibility()
        result = await self.sync.save(self.participant, self.race, self.store.competitors())
        if not result.success and result.kind in _STALE_RACE_KINDS:
            previous = self.race.id if self.race else None
            await self.load_race_information()
            current = self.race.id if self.race else None
            if current != previous:
                # the known roster belongs to the old race
                await self.load_roster()
        return result
