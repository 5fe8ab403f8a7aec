"""
Async JSON client for the BTCC Fantasy REST API.

All engine components talk to the backend through :class:`ApiClient`.  Each
call returns an :class:`~btcc_fantasy.errors.ApiResult`; transport problems
(timeouts, refused connections, non-JSON bodies) become failed results
instead of exceptions, and nothing is retried here.  Mutating calls in
particular must only be repeated after the user has re-checked state.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from btcc_fantasy import config
from btcc_fantasy.errors import ApiResult, ErrorCategory, FailureKind

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {"Cache-Control": "no-store", "Pragma": "no-cache"}


class ApiClient:
    def __init__(
        self,
        season: int,
        base_url: str = config.API_BASE_URL,
        token: Optional[str] = None,
        timeout: float = config.REQUEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.season = season
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self, include_auth: bool, elevation_token: Optional[str]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json", **NO_CACHE_HEADERS}
        if include_auth and self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        if elevation_token:
            headers[config.ELEVATION_HEADER] = f"Bearer {elevation_token}"
        return headers

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        elevation_token: Optional[str] = None,
        include_auth: bool = True,
    ) -> ApiResult:
        if params:
            params = {k: v for k, v in params.items() if v is not None}
        try:
            response = await self._client.request(
                method,
                path,
                json=json,
                params=params,
                headers=self._headers(include_auth, elevation_token),
            )
        except httpx.TimeoutException:
            logger.warning("API request timed out: %s %s", method, path)
            return ApiResult.fail(
                "The request timed out. Please check the current state before trying again.",
                ErrorCategory.TRANSPORT,
                kind=FailureKind.UNEXPECTED,
            )
        except httpx.HTTPError as exc:
            logger.warning("API request failed: %s %s (%s)", method, path, exc)
            return ApiResult.fail(
                f"Could not reach the server: {exc}",
                ErrorCategory.TRANSPORT,
                kind=FailureKind.UNEXPECTED,
            )

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if not response.is_success:
            message, code = None, None
            if isinstance(payload, dict):
                message = payload.get("message") or payload.get("detail") or payload.get("error")
                code = payload.get("code")
            elif response.text:
                message = response.text
            logger.info("API %s %s -> %s %s", method, path, response.status_code, message)
            return ApiResult.from_backend(message or "Request failed", status=response.status_code, code=code)

        if payload is None and response.status_code != 204:
            return ApiResult.fail(
                "Malformed response from server",
                ErrorCategory.TRANSPORT,
                status=response.status_code,
                kind=FailureKind.UNEXPECTED,
            )
        return ApiResult.ok(payload, status=response.status_code)

    # -- auth -------------------------------------------------------------

    async def login(self, username: str, pin: str) -> ApiResult:
        result = await self.request(
            "POST",
            "/api/auth/login",
            json={"username": username, "pin": pin, "season": self.season},
            include_auth=False,
        )
        if result.success:
            self.token = result.data.get("token")
        return result

    async def verify(self) -> ApiResult:
        return await self.request("GET", "/api/auth/verify")

    async def request_elevation(self, elevation_key: str) -> ApiResult:
        return await self.request("POST", "/api/user/elevate", json={"elevation_key": elevation_key})

    async def login_seasons(self) -> ApiResult:
        return await self.request("GET", "/api/auth/seasons", include_auth=False)

    # -- drivers ----------------------------------------------------------

    async def list_drivers(self, category: Optional[str] = None, sort: str = "name", order: str = "asc") -> ApiResult:
        return await self.request(
            "GET",
            f"/api/driver/{self.season}",
            params={"category": category, "sort": sort, "order": order},
        )

    async def driver_stats(self) -> ApiResult:
        return await self.request("GET", f"/api/driver/{self.season}/stats")

    async def get_driver(self, driver_id: str) -> ApiResult:
        return await self.request("GET", f"/api/driver/{self.season}/{driver_id}")

    async def create_driver(self, data: Dict[str, Any], elevation_token: str) -> ApiResult:
        return await self.request("POST", f"/api/driver/{self.season}", json=data, elevation_token=elevation_token)

    async def update_driver(self, driver_id: str, data: Dict[str, Any], elevation_token: str) -> ApiResult:
        return await self.request(
            "PUT", f"/api/driver/{self.season}/{driver_id}", json=data, elevation_token=elevation_token
        )

    async def delete_driver(self, driver_id: str, elevation_token: str) -> ApiResult:
        return await self.request("DELETE", f"/api/driver/{self.season}/{driver_id}", elevation_token=elevation_token)

    # -- users ------------------------------------------------------------

    async def list_users(self, role: Optional[str] = None) -> ApiResult:
        return await self.request("GET", f"/api/user/{self.season}", params={"role": role})

    async def user_stats(self) -> ApiResult:
        return await self.request("GET", f"/api/user/{self.season}/stats")

    async def create_user(self, data: Dict[str, Any], elevation_token: str) -> ApiResult:
        return await self.request("POST", f"/api/user/{self.season}", json=data, elevation_token=elevation_token)

    async def update_user(self, user_id: str, data: Dict[str, Any], elevation_token: str) -> ApiResult:
        return await self.request(
            "PUT", f"/api/user/{self.season}/{user_id}", json=data, elevation_token=elevation_token
        )

    async def delete_user(self, user_id: str, elevation_token: str) -> ApiResult:
        return await self.request("DELETE", f"/api/user/{self.season}/{user_id}", elevation_token=elevation_token)

    async def reset_user_pin(self, user_id: str, new_pin: str, elevation_token: str) -> ApiResult:
        return await self.request(
            "POST",
            f"/api/user/{self.season}/{user_id}/reset-pin",
            json={"new_pin": new_pin},
            elevation_token=elevation_token,
        )

    # -- races ------------------------------------------------------------

    async def list_races(self, sort: str = "submission_deadline", order: str = "asc") -> ApiResult:
        return await self.request("GET", f"/api/race/{self.season}", params={"sort": sort, "order": order})

    async def get_race(self, race_id: str) -> ApiResult:
        return await self.request("GET", f"/api/race/{self.season}/{race_id}")

    async def race_eligibility(self, race_id: str) -> ApiResult:
        return await self.request("GET", f"/api/race/{self.season}/{race_id}/eligibility")

    async def set_race_lock(self, race_id: str, is_locked: bool, elevation_token: str) -> ApiResult:
        return await self.request(
            "PUT",
            f"/api/race/{self.season}/{race_id}/lock",
            json={"is_locked": is_locked},
            elevation_token=elevation_token,
        )

    # -- rosters ----------------------------------------------------------

    async def list_rosters(self, user: Optional[str] = None, race: Optional[str] = None) -> ApiResult:
        return await self.request("GET", f"/api/roster/{self.season}", params={"user": user, "race": race})

    async def user_rosters(self, user_id: str) -> ApiResult:
        return await self.request("GET", f"/api/roster/{self.season}/user/{user_id}")

    async def create_roster(self, data: Dict[str, Any]) -> ApiResult:
        return await self.request("POST", f"/api/roster/{self.season}", json=data)

    async def update_roster(self, roster_id: str, data: Dict[str, Any]) -> ApiResult:
        return await self.request("PUT", f"/api/roster/{self.season}/{roster_id}", json=data)

    async def delete_roster(self, roster_id: str) -> ApiResult:
        return await self.request("DELETE", f"/api/roster/{self.season}/{roster_id}")

    async def validate_roster(self, data: Dict[str, Any]) -> ApiResult:
        return await self.request("POST", f"/api/roster/{self.season}/validate", json=data)

    async def roster_stats(self) -> ApiResult:
        return await self.request("GET", f"/api/roster/{self.season}/stats")

    # -- seasons ----------------------------------------------------------

    async def list_seasons(self) -> ApiResult:
        return await self.request("GET", "/api/season")

    async def season_stats(self, season: Optional[int] = None) -> ApiResult:
        return await self.request("GET", f"/api/season/{season or self.season}/stats")

    async def initialize_season(
        self,
        season: int,
        elevation_token: str,
        copy_from: Optional[int] = None,
        collections: Optional[List[str]] = None,
    ) -> ApiResult:
        data: Dict[str, Any] = {"copy_from": copy_from}
        if collections is not None:
            data["collections"] = collections
        return await self.request(
            "POST", f"/api/season/{season}/initialize", json=data, elevation_token=elevation_token
        )

    async def delete_season(self, season: int, elevation_token: str) -> ApiResult:
        return await self.request(
            "DELETE",
            f"/api/season/{season}",
            json={"confirm_delete": "DELETE_ALL_DATA"},
            elevation_token=elevation_token,
        )
