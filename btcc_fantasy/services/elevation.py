"""
Time-boxed step-up credential for catalog writes.

The grant lives only in this object.  Callers fetch the token through
``require_elevation()`` right before each mutating request and never keep
it, so an expiry between two requests is always honoured.  ``is_elevated``
reads the clock itself; the background sweep only exists to clean up and
to tell the user that the grant ran out.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from btcc_fantasy import config
from btcc_fantasy.client.api import ApiClient
from btcc_fantasy.errors import ApiResult, ErrorCategory, FailureKind
from btcc_fantasy.helpers.timeutil import utcnow
from btcc_fantasy.models import ElevationGrant

logger = logging.getLogger(__name__)

EXPIRED_NOTICE = "Administrative elevation has expired"
REQUIRED_NOTICE = "Administrative elevation required for this action"


def _noop(*args, **kwargs) -> None:
    return None


class ElevationSession:
    def __init__(
        self,
        api: ApiClient,
        duration: timedelta = timedelta(minutes=config.ELEVATION_MINUTES),
        *,
        clock: Callable[[], datetime] = utcnow,
        notify: Callable[[str, str], None] = _noop,
        on_elevation_required: Callable[[], None] = _noop,
    ) -> None:
        self._api = api
        self.duration = duration
        self._clock = clock
        self._notify = notify
        self._on_elevation_required = on_elevation_required
        self._grant: Optional[ElevationGrant] = None
        self._sweeper: Optional[asyncio.Task] = None

    async def request_grant(self, key: str) -> ApiResult:
        if not key or not key.strip():
            return ApiResult.fail("Please enter the elevation key", ErrorCategory.CONSTRAINT)

        result = await self._api.request_elevation(key)
        if not result.success:
            # backend reason is shown verbatim
            return result

        token = (result.data or {}).get("token")
        if not token:
            return ApiResult.fail(
                "Elevation response did not contain a token",
                ErrorCategory.TRANSPORT,
                status=result.status,
                kind=FailureKind.UNEXPECTED,
            )
        self._grant = ElevationGrant(token=token, expires_at=self._clock() + self.duration)
        logger.info("Elevation granted until %s", self._grant.expires_at.isoformat())
        self._notify("success", "Elevation granted successfully")
        return ApiResult.ok({"expires_at": self._grant.expires_at}, status=result.status)

    def is_elevated(self) -> bool:
        return self._grant is not None and self._clock() < self._grant.expires_at

    def require_elevation(self) -> Optional[ElevationGrant]:
        if self.is_elevated():
            return self._grant
        self._notify("warning", REQUIRED_NOTICE)
        self._on_elevation_required()
        return None

    def revoke(self) -> None:
        if self._grant is None:
            return
        self._grant = None
        logger.info("Elevation revoked")
        self._notify("info", "Elevation revoked")

    def check_expiry(self) -> bool:
        """Drop an expired grant.  Returns True when a grant was expired now."""
        if self._grant is not None and self._clock() >= self._grant.expires_at:
            self._grant = None
            logger.info("Elevation expired")
            self._notify("warning", EXPIRED_NOTICE)
            return True
        return False

    def remaining(self) -> timedelta:
        if not self.is_elevated():
            return timedelta(0)
        return max(timedelta(0), self._grant.expires_at - self._clock())

    def remaining_formatted(self) -> str:
        remaining = self.remaining()
        if remaining <= timedelta(0):
            return "Expired"
        minutes = -(-int(remaining.total_seconds()) // 60)  # ceil
        return f"{minutes} minute{'s' if minutes != 1 else ''} remaining"

    def extend(self) -> bool:
        """Re-arm an active grant for a full duration.  The backend token itself is not refreshed."""
        if not self.is_elevated():
            return False
        self._grant = ElevationGrant(token=self._grant.token, expires_at=self._clock() + self.duration)
        self._notify("success", "Elevation extended")
        return True

    # -- background sweep -------------------------------------------------

    async def _sweep(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.check_expiry()

    def start_sweep(self, interval: float = config.ELEVATION_SWEEP_SECONDS) -> None:
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(self._sweep(interval))

    async def stop_sweep(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    @property
    def sweeping(self) -> bool:
        return self._sweeper is not None and not self._sweeper.done()

    async def teardown(self) -> None:
        await self.stop_sweep()
        self._grant = None
