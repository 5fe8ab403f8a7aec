"""
Catalog writes for administrators.

Every operation asks the elevation session for a grant immediately before
dispatch and sends its token with that one request only.  On success the
catalog reload hook runs so the selection page never keeps a stale driver
list (and stale budgets) around.
"""

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from btcc_fantasy.client.api import ApiClient
from btcc_fantasy.errors import ApiResult, ErrorCategory, FailureKind
from btcc_fantasy.models import DRIVER_CATEGORIES
from btcc_fantasy.services.elevation import REQUIRED_NOTICE, ElevationSession

logger = logging.getLogger(__name__)


async def _no_reload() -> None:
    return None


def validate_driver_data(data: Dict[str, Any], partial: bool = False) -> Optional[str]:
    if not partial or "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            return "Driver name is required"
    if "value" in data:
        try:
            if float(data["value"]) < 0:
                return "Driver value cannot be negative"
        except (TypeError, ValueError):
            return "Driver value must be a number"
    if not partial or "categories" in data:
        categories = data.get("categories") or []
        if not 1 <= len(categories) <= 2:
            return "Categories must contain 1 or 2 items"
        unknown = [c for c in categories if c not in DRIVER_CATEGORIES]
        if unknown:
            return f"Unknown categories: {', '.join(unknown)}"
    return None


def validate_participant_data(data: Dict[str, Any], partial: bool = False) -> Optional[str]:
    if not partial or "username" in data:
        if not (data.get("username") or "").strip():
            return "Username is required"
    if not partial and not data.get("pin"):
        return "PIN is required"
    if "role" in data and data["role"] not in ("admin", "user"):
        return "Role must be 'admin' or 'user'"
    if "budget" in data:
        try:
            if float(data["budget"]) < 0:
                return "Budget cannot be negative"
        except (TypeError, ValueError):
            return "Budget must be a number"
    return None


class CatalogAdminOperations:
    def __init__(
        self,
        api: ApiClient,
        elevation: ElevationSession,
        reload_catalog: Callable[[], Awaitable[Any]] = _no_reload,
    ) -> None:
        self._api = api
        self._elevation = elevation
        self._reload_catalog = reload_catalog

    async def _dispatch(self, action: str, call: Callable[[str], Awaitable[ApiResult]]) -> ApiResult:
        grant = self._elevation.require_elevation()
        if grant is None:
            return ApiResult.fail(REQUIRED_NOTICE, ErrorCategory.AUTHORIZATION, kind=FailureKind.AUTHORIZATION)
        result = await call(grant.token)
        if not result.success:
            logger.info("%s failed: %s", action, result.error)
            return result
        logger.info("%s succeeded", action)
        await self._reload_catalog()
        return result

    def _invalid(self, message: str) -> ApiResult:
        return ApiResult.fail(message, ErrorCategory.CONSTRAINT)

    # -- drivers ----------------------------------------------------------

    async def create_driver(self, data: Dict[str, Any]) -> ApiResult:
        problem = validate_driver_data(data)
        if problem:
            return self._invalid(problem)
        return await self._dispatch("create driver", lambda token: self._api.create_driver(data, token))

    async def update_driver(self, driver_id: str, data: Dict[str, Any]) -> ApiResult:
        problem = validate_driver_data(data, partial=True)
        if problem:
            return self._invalid(problem)
        return await self._dispatch(
            f"update driver {driver_id}", lambda token: self._api.update_driver(driver_id, data, token)
        )

    async def delete_driver(self, driver_id: str) -> ApiResult:
        return await self._dispatch(f"delete driver {driver_id}", lambda token: self._api.delete_driver(driver_id, token))

    # -- participants -----------------------------------------------------

    async def create_participant(self, data: Dict[str, Any]) -> ApiResult:
        problem = validate_participant_data(data)
        if problem:
            return self._invalid(problem)
        return await self._dispatch("create participant", lambda token: self._api.create_user(data, token))

    async def update_participant(self, user_id: str, data: Dict[str, Any]) -> ApiResult:
        problem = validate_participant_data(data, partial=True)
        if problem:
            return self._invalid(problem)
        return await self._dispatch(
            f"update participant {user_id}", lambda token: self._api.update_user(user_id, data, token)
        )

    async def delete_participant(self, user_id: str) -> ApiResult:
        return await self._dispatch(f"delete participant {user_id}", lambda token: self._api.delete_user(user_id, token))

    async def reset_participant_pin(self, user_id: str, new_pin: str) -> ApiResult:
        if not new_pin or len(new_pin) < 4:
            return self._invalid("PIN must be at least 4 characters")
        return await self._dispatch(
            f"reset pin for {user_id}", lambda token: self._api.reset_user_pin(user_id, new_pin, token)
        )

    # -- races ------------------------------------------------------------

    async def set_race_lock(self, race_id: str, is_locked: bool) -> ApiResult:
        action = "lock" if is_locked else "unlock"
        return await self._dispatch(
            f"{action} race {race_id}", lambda token: self._api.set_race_lock(race_id, is_locked, token)
        )

    # -- seasons ----------------------------------------------------------

    async def initialize_season(self, season: int, copy_from: Optional[int] = None) -> ApiResult:
        if copy_from is not None and copy_from == season:
            return self._invalid("Cannot copy a season onto itself")
        return await self._dispatch(
            f"initialise season {season}", lambda token: self._api.initialize_season(season, token, copy_from=copy_from)
        )

    async def delete_season(self, season: int) -> ApiResult:
        return await self._dispatch(f"delete season {season}", lambda token: self._api.delete_season(season, token))
