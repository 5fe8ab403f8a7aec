"""
BTCC Fantasy API server.

FastAPI application backed by MongoDB through the asynchronous Motor
client.  It serves the season catalog (drivers, participants), the race
calendar and the participants' rosters, and issues the two kinds of token
the client uses: a long-lived session token from ``/api/auth/login`` and a
short-lived elevation token from ``/api/user/elevate`` that every catalog
write must carry in the ``X-Elevation-Token`` header.

Every record carries a ``season`` field; all queries are scoped to the
season in the path.

Roster submissions are re-validated here with the same composition rules
and eligibility gate the client runs, since the client's race metadata can
be stale.

Start with ``uvicorn btcc_fantasy.server:app --reload``.
"""

import hmac
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import bcrypt
import jwt
from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError, OperationFailure
from starlette.exceptions import HTTPException as StarletteHTTPException

from btcc_fantasy import __version__, config
from btcc_fantasy.models import DRIVER_CATEGORIES, Competitor, EventDescriptor
from btcc_fantasy.services import composition
from btcc_fantasy.services.eligibility import EXPIRED, LOCKED, NO_RACE, URGENT, evaluate
from btcc_fantasy.services.rules import RosterRules, elevation_duration

logger = logging.getLogger("uvicorn.error")  # uses Uvicorn's logger


client = None
db = None
users_collection = None
drivers_collection = None
races_collection = None
rosters_collection = None
seasons_collection = None


app = FastAPI(title="BTCC Fantasy API", version=__version__)

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

security = HTTPBearer()

ROSTER_RULES = RosterRules.from_dict()


###########################
# Errors
###########################

class ApiError(HTTPException):
    """HTTPException with a machine-readable code the client classifies on."""

    def __init__(self, status_code: int, code: str, message: str) -> None:
        super().__init__(status_code=status_code, detail=message)
        self.code = code


_DEFAULT_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    503: "UNAVAILABLE",
}


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = getattr(exc, "code", None) or _DEFAULT_CODES.get(exc.status_code, "ERROR")
    return JSONResponse(
        status_code=exc.status_code,
        content={"success": False, "code": code, "message": exc.detail},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = [f"{'.'.join(str(p) for p in e.get('loc', ())[1:])}: {e.get('msg')}" for e in exc.errors()]
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "code": "VALIDATION_ERROR", "message": f"Invalid input data: {'. '.join(problems)}"},
    )


###########################
# Helper and utility functions
###########################

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_pin(pin: str) -> str:
    """Hash a plaintext PIN using bcrypt."""
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_pin(pin: str, hashed: str) -> bool:
    """Verify a plaintext PIN against a bcrypt hash."""
    return bcrypt.checkpw(pin.encode("utf-8"), hashed.encode("utf-8"))


def normalize_username(name: str) -> str:
    return (name or "").strip().casefold()


def create_token(user_id: str, season: int, lifetime: timedelta, elevated: bool = False) -> str:
    now = utcnow()
    payload = {
        "user_id": user_id,
        "season": season,
        "elevated": elevated,
        "iat": int(now.timestamp()),
        "exp": now + lifetime,
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise ApiError(401, "UNAUTHORIZED", "Your token has expired. Please log in again.")
    except jwt.PyJWTError:
        raise ApiError(401, "UNAUTHORIZED", "Invalid token. Please log in again.")


def valid_season(season: int) -> int:
    if not 2000 <= season <= 2100:
        raise ApiError(400, "BAD_REQUEST", f"Invalid season: {season}")
    return season


def _public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": doc.get("id"),
        "username": doc.get("username"),
        "role": doc.get("role", "user"),
        "budget": doc.get("budget", 0),
        "points": doc.get("points", 0),
        "season": doc.get("season"),
    }


def _sort_direction(order: str) -> int:
    return -1 if order == "desc" else 1


def _require_db() -> None:
    if users_collection is None:
        raise ApiError(503, "UNAVAILABLE", "Database not initialised yet")


def _round2(value: float) -> float:
    return round(value or 0, 2)


async def _season_stats(season: int) -> Dict[str, Any]:
    """Record counts and catalog totals for one season."""
    drivers = await drivers_collection.find({"season": season}, {"_id": 0}).to_list(length=None)
    users = await users_collection.find({"season": season}, {"_id": 0, "pin": 0}).to_list(length=None)
    return {
        "season": season,
        "drivers": {"count": len(drivers), "total_value": _round2(sum(d.get("value", 0) for d in drivers))},
        "users": {"count": len(users), "total_budget": _round2(sum(u.get("budget", 0) for u in users))},
        "races": {"count": await races_collection.count_documents({"season": season})},
        "rosters": {"count": await rosters_collection.count_documents({"season": season})},
    }


async def _known_seasons() -> List[int]:
    """Every season that has been initialised or holds any catalog data, ascending."""
    seasons = set(await seasons_collection.distinct("season"))
    for collection in (users_collection, drivers_collection, races_collection):
        seasons.update(await collection.distinct("season"))
    return sorted(s for s in seasons if isinstance(s, int))


async def current_user(credentials: HTTPAuthorizationCredentials = Depends(security)) -> Dict[str, Any]:
    """
    Resolve the session token in the Authorization header to a user document.

    Elevation tokens are not accepted here; they only ride along with the
    session token on catalog writes.
    """
    _require_db()
    payload = decode_token(credentials.credentials)
    if payload.get("elevated"):
        raise ApiError(401, "UNAUTHORIZED", "Use your session token for this request")
    user = await users_collection.find_one(
        {"id": payload.get("user_id"), "season": payload.get("season")}, {"_id": 0, "pin": 0}
    )
    if not user:
        raise ApiError(401, "UNAUTHORIZED", "The user belonging to this token no longer exists")
    return user


async def require_admin(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    if user.get("role") != "admin":
        raise ApiError(403, "FORBIDDEN", "Access denied: requires role 'admin'")
    return user


async def require_elevation(
    user: Dict[str, Any] = Depends(require_admin),
    x_elevation_token: Optional[str] = Header(default=None),
) -> Dict[str, Any]:
    if not x_elevation_token:
        raise ApiError(401, "ELEVATION_REQUIRED", "Elevated token required")
    scheme, _, token = x_elevation_token.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise ApiError(401, "ELEVATION_REQUIRED", "Elevated token required")
    payload = decode_token(token)
    if not payload.get("elevated"):
        raise ApiError(403, "ELEVATION_REQUIRED", "Elevated privileges required")
    if payload.get("user_id") != user["id"]:
        raise ApiError(403, "ELEVATION_REQUIRED", "Elevated token does not belong to this session")
    return user


###########################
# Startup
###########################

@app.on_event("startup")
async def startup_event() -> None:
    """Connect to MongoDB, bind the collections and make sure the unique indexes exist."""
    global client, db
    global users_collection, drivers_collection, races_collection, rosters_collection, seasons_collection

    client = AsyncIOMotorClient(config.MONGO_URL)
    db = client[config.MONGO_DB]

    users_collection = db["users"]
    drivers_collection = db["drivers"]
    races_collection = db["races"]
    rosters_collection = db["rosters"]
    seasons_collection = db["seasons"]

    try:
        await users_collection.create_index(
            [("season", 1), ("username_cf", 1)], unique=True, name="uniq_season_username"
        )
        await drivers_collection.create_index(
            [("season", 1), ("name_cf", 1)], unique=True, name="uniq_season_driver_name"
        )
        await races_collection.create_index([("season", 1), ("round_number", 1)], name="season_round")
        await rosters_collection.create_index([("season", 1), ("user", 1), ("race", 1)], name="season_user_race")
        await seasons_collection.create_index("season", unique=True, name="uniq_season")
    except OperationFailure as e:
        # Let the server start; duplicates have to be cleaned up separately.
        logger.warning("index creation failed: %s", e)


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if client is not None:
        client.close()


@app.get("/api/health")
async def health_check() -> Dict[str, Any]:
    """Simple health check endpoint."""
    return {"success": True, "status": "ok", "service": "BTCC Fantasy API", "version": __version__}


###########################
# Authentication
###########################

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


class LoginIn(BaseModel):
    username: str
    pin: str
    season: Optional[int] = None


@auth_router.post("/login")
async def login(body: LoginIn) -> Dict[str, Any]:
    """Log in with username and PIN. Returns a session token bound to the season."""
    _require_db()
    season = valid_season(body.season or utcnow().year)
    user = await users_collection.find_one({"username_cf": normalize_username(body.username), "season": season})
    if not user or not verify_pin(body.pin, user["pin"]):
        raise ApiError(401, "UNAUTHORIZED", "Invalid username or PIN")
    token = create_token(user["id"], season, timedelta(days=config.SESSION_TOKEN_DAYS))
    logger.info("login user=%s season=%s", user["id"], season)
    return {"success": True, "token": token, "user": _public_user(user)}


@auth_router.get("/verify")
async def verify(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    return {"success": True, "user": _public_user(user)}


@auth_router.get("/seasons")
async def login_seasons() -> Dict[str, Any]:
    """Seasons a participant can sign in to: the current one plus past seasons that have users."""
    _require_db()
    current = utcnow().year
    historical = []
    for season in reversed(await _known_seasons()):
        if season == current:
            continue
        count = await users_collection.count_documents({"season": season})
        if count:
            historical.append({"season": season, "user_count": count})
    return {
        "success": True,
        "current": {"season": current, "user_count": await users_collection.count_documents({"season": current})},
        "historical": historical,
    }


###########################
# Users (participants)
###########################

user_router = APIRouter(prefix="/api/user", tags=["user"])


class ElevateIn(BaseModel):
    elevation_key: str = Field(min_length=1)


class UserIn(BaseModel):
    username: str = Field(min_length=1)
    pin: str = Field(min_length=4)
    role: str = Field(default="user", pattern="^(admin|user)$")
    budget: float = Field(default=0, ge=0)


class UserUpdate(BaseModel):
    username: Optional[str] = Field(default=None, min_length=1)
    role: Optional[str] = Field(default=None, pattern="^(admin|user)$")
    budget: Optional[float] = Field(default=None, ge=0)
    points: Optional[float] = Field(default=None, ge=0)


class PinReset(BaseModel):
    new_pin: str = Field(min_length=4)


# Declared before "/{season}" so "elevate" is never parsed as a season.
@user_router.post("/elevate")
async def elevate(body: ElevateIn, user: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    if not config.ELEVATION_SECRET:
        raise ApiError(503, "UNAVAILABLE", "Elevation is not configured on this server")
    if not hmac.compare_digest(body.elevation_key.encode("utf-8"), config.ELEVATION_SECRET.encode("utf-8")):
        logger.warning("elevation rejected user=%s", user["id"])
        raise ApiError(403, "FORBIDDEN", "Invalid elevation key")
    lifetime = elevation_duration()
    minutes = int(lifetime.total_seconds() // 60)
    token = create_token(user["id"], user["season"], lifetime, elevated=True)
    logger.info("elevation granted user=%s minutes=%d", user["id"], minutes)
    return {"success": True, "message": "Elevation successful", "token": token, "expires_in": f"{minutes} minutes"}


@user_router.get("/{season}")
async def list_users(
    season: int,
    role: Optional[str] = None,
    sort: str = "username",
    order: str = "asc",
    admin: Dict[str, Any] = Depends(require_admin),
) -> Dict[str, Any]:
    valid_season(season)
    query: Dict[str, Any] = {"season": season}
    if role in ("admin", "user"):
        query["role"] = role
    sort_field = sort if sort in ("username", "budget", "points") else "username"
    users = await users_collection.find(query, {"_id": 0, "pin": 0}).sort(sort_field, _sort_direction(order)).to_list(length=None)
    return {"success": True, "season": season, "count": len(users), "users": [_public_user(u) for u in users]}


@user_router.get("/{season}/stats")
async def user_stats(season: int, admin: Dict[str, Any] = Depends(require_admin)) -> Dict[str, Any]:
    valid_season(season)
    users = await users_collection.find({"season": season}, {"_id": 0, "pin": 0}).to_list(length=None)
    admins = sum(1 for u in users if u.get("role") == "admin")
    return {
        "success": True,
        "season": season,
        "stats": {
            "total": len(users),
            "admins": admins,
            "regular": len(users) - admins,
            "total_budget": _round2(sum(u.get("budget", 0) for u in users)),
            "total_points": _round2(sum(u.get("points", 0) for u in users)),
        },
    }


@user_router.post("/{season}", status_code=201)
async def create_user(season: int, body: UserIn, admin: Dict[str, Any] = Depends(require_elevation)) -> Dict[str, Any]:
    valid_season(season)
    norm = normalize_username(body.username)
    if await users_collection.find_one({"season": season, "username_cf": norm}):
        raise ApiError(409, "CONFLICT", f"username '{body.username.strip()}' already exists. Please use another one.")
    doc = {
        "id": str(uuid.uuid4()),
        "season": season,
        "username": body.username.strip(),
        "username_cf": norm,
        "pin": hash_pin(body.pin),
        "role": body.role,
        "budget": body.budget,
        "points": 0,
        "created_at": utcnow(),
    }
    try:
        await users_collection.insert_one(doc)
    except DuplicateKeyError:
        raise ApiError(409, "CONFLICT", f"username '{body.username.strip()}' already exists. Please use another one.")
    logger.info("user created id=%s by=%s", doc["id"], admin["id"])
    return {"success": True, "message": "User created successfully", "season": season, "user": _public_user(doc)}


@user_router.put("/{season}/{user_id}")
async def update_user(
    season: int, user_id: str, body: UserUpdate, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    valid_season(season)
    existing = await users_collection.find_one({"id": user_id, "season": season}, {"_id": 0})
    if not existing:
        raise ApiError(404, "NOT_FOUND", "User not found")
    update = body.model_dump(exclude_none=True)
    if "username" in update:
        update["username"] = update["username"].strip()
        norm = normalize_username(update["username"])
        clash = await users_collection.find_one({"season": season, "username_cf": norm})
        if clash and clash.get("id") != user_id:
            raise ApiError(409, "CONFLICT", f"username '{update['username']}' already exists. Please use another one.")
        update["username_cf"] = norm
    if not update:
        raise ApiError(400, "BAD_REQUEST", "No valid fields provided for update")
    await users_collection.update_one({"id": user_id, "season": season}, {"$set": update})
    existing.update(update)
    return {"success": True, "message": "User updated successfully", "season": season, "user": _public_user(existing)}


@user_router.delete("/{season}/{user_id}")
async def delete_user(season: int, user_id: str, admin: Dict[str, Any] = Depends(require_elevation)) -> Dict[str, Any]:
    valid_season(season)
    if user_id == admin["id"]:
        raise ApiError(400, "BAD_REQUEST", "You cannot delete your own account")
    res = await users_collection.delete_one({"id": user_id, "season": season})
    if not res.deleted_count:
        raise ApiError(404, "NOT_FOUND", "User not found")
    removed = await rosters_collection.delete_many({"user": user_id, "season": season})
    logger.info("user deleted id=%s rosters=%d by=%s", user_id, removed.deleted_count, admin["id"])
    return {"success": True, "message": "User deleted successfully", "season": season}


@user_router.post("/{season}/{user_id}/reset-pin")
async def reset_pin(
    season: int, user_id: str, body: PinReset, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    valid_season(season)
    res = await users_collection.update_one({"id": user_id, "season": season}, {"$set": {"pin": hash_pin(body.new_pin)}})
    if not res.matched_count:
        raise ApiError(404, "NOT_FOUND", "User not found")
    return {"success": True, "message": "PIN reset successfully"}


###########################
# Drivers
###########################

driver_router = APIRouter(prefix="/api/driver", tags=["driver"])


class DriverIn(BaseModel):
    name: str = Field(min_length=1)
    value: float = Field(default=0, ge=0)
    categories: List[str] = Field(min_length=1, max_length=2)
    image_url: Optional[str] = None
    description: Optional[str] = None


class DriverUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    value: Optional[float] = Field(default=None, ge=0)
    categories: Optional[List[str]] = Field(default=None, min_length=1, max_length=2)
    points: Optional[float] = Field(default=None, ge=0)
    image_url: Optional[str] = None
    description: Optional[str] = None


def _check_categories(categories: List[str]) -> None:
    unknown = [c for c in categories if c not in DRIVER_CATEGORIES]
    if unknown:
        raise ApiError(400, "BAD_REQUEST", f"Unknown categories: {', '.join(unknown)}")
    if len(set(categories)) != len(categories):
        raise ApiError(400, "BAD_REQUEST", "Categories must not repeat")


def _public_driver(doc: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(doc)
    out.pop("_id", None)
    out.pop("name_cf", None)
    return out


@driver_router.get("/{season}")
async def list_drivers(
    season: int,
    category: Optional[str] = None,
    sort: str = "name",
    order: str = "asc",
    user: Dict[str, Any] = Depends(current_user),
) -> Dict[str, Any]:
    valid_season(season)
    query: Dict[str, Any] = {"season": season}
    if category:
        query["categories"] = category
    sort_field = sort if sort in ("name", "value", "points") else "name"
    drivers = await drivers_collection.find(query, {"_id": 0}).sort(sort_field, _sort_direction(order)).to_list(length=None)
    return {"success": True, "season": season, "count": len(drivers), "drivers": [_public_driver(d) for d in drivers]}


# Declared before "/{season}/{driver_id}" so "stats" is never parsed as an id.
@driver_router.get("/{season}/stats")
async def driver_stats(season: int, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    drivers = await drivers_collection.find({"season": season}, {"_id": 0}).to_list(length=None)
    by_category = {c: {"count": 0, "total_value": 0.0, "total_points": 0.0} for c in DRIVER_CATEGORIES}
    for d in drivers:
        for category in d.get("categories") or []:
            bucket = by_category.get(category)
            if bucket is None:
                continue
            bucket["count"] += 1
            bucket["total_value"] += d.get("value", 0)
            bucket["total_points"] += d.get("points", 0)
    for bucket in by_category.values():
        bucket["total_value"] = _round2(bucket["total_value"])
        bucket["total_points"] = _round2(bucket["total_points"])
    return {
        "success": True,
        "season": season,
        "stats": {
            "total": len(drivers),
            "total_value": _round2(sum(d.get("value", 0) for d in drivers)),
            "total_points": _round2(sum(d.get("points", 0) for d in drivers)),
            "categories": by_category,
        },
    }


@driver_router.get("/{season}/{driver_id}")
async def get_driver(season: int, driver_id: str, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    driver = await drivers_collection.find_one({"id": driver_id, "season": season}, {"_id": 0})
    if not driver:
        raise ApiError(404, "DRIVER_NOT_FOUND", "Driver not found")
    return {"success": True, "season": season, "driver": _public_driver(driver)}


@driver_router.post("/{season}", status_code=201)
async def create_driver(season: int, body: DriverIn, admin: Dict[str, Any] = Depends(require_elevation)) -> Dict[str, Any]:
    valid_season(season)
    _check_categories(body.categories)
    name = body.name.strip()
    if await drivers_collection.find_one({"season": season, "name_cf": name.casefold()}):
        raise ApiError(409, "CONFLICT", "A driver with this name already exists for this season")
    doc = {
        "id": str(uuid.uuid4()),
        "season": season,
        "name": name,
        "name_cf": name.casefold(),
        "value": body.value,
        "previous_value": 0,
        "points": 0,
        "categories": body.categories,
        "image_url": body.image_url,
        "description": body.description,
    }
    try:
        await drivers_collection.insert_one(doc)
    except DuplicateKeyError:
        raise ApiError(409, "CONFLICT", "A driver with this name already exists for this season")
    logger.info("driver created id=%s by=%s", doc["id"], admin["id"])
    return {"success": True, "message": "Driver created successfully", "season": season, "driver": _public_driver(doc)}


@driver_router.put("/{season}/{driver_id}")
async def update_driver(
    season: int, driver_id: str, body: DriverUpdate, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    valid_season(season)
    existing = await drivers_collection.find_one({"id": driver_id, "season": season}, {"_id": 0})
    if not existing:
        raise ApiError(404, "DRIVER_NOT_FOUND", "Driver not found")
    update = body.model_dump(exclude_unset=True)
    if "categories" in update:
        _check_categories(update["categories"])
    if "name" in update:
        update["name"] = update["name"].strip()
        clash = await drivers_collection.find_one({"season": season, "name_cf": update["name"].casefold()})
        if clash and clash.get("id") != driver_id:
            raise ApiError(409, "CONFLICT", "A driver with this name already exists for this season")
        update["name_cf"] = update["name"].casefold()
    if "value" in update and update["value"] != existing.get("value"):
        update["previous_value"] = existing.get("value", 0)
    if not update:
        raise ApiError(400, "BAD_REQUEST", "No valid fields provided for update")
    await drivers_collection.update_one({"id": driver_id, "season": season}, {"$set": update})
    existing.update(update)
    return {"success": True, "message": "Driver updated successfully", "season": season, "driver": _public_driver(existing)}


@driver_router.delete("/{season}/{driver_id}")
async def delete_driver(season: int, driver_id: str, admin: Dict[str, Any] = Depends(require_elevation)) -> Dict[str, Any]:
    valid_season(season)
    res = await drivers_collection.delete_one({"id": driver_id, "season": season})
    if not res.deleted_count:
        raise ApiError(404, "DRIVER_NOT_FOUND", "Driver not found")
    logger.info("driver deleted id=%s by=%s", driver_id, admin["id"])
    return {"success": True, "message": "Driver deleted successfully", "season": season}


###########################
# Races
###########################

race_router = APIRouter(prefix="/api/race", tags=["race"])


class RaceLockIn(BaseModel):
    is_locked: bool


async def _race_or_404(season: int, race_id: str) -> Dict[str, Any]:
    race = await races_collection.find_one({"id": race_id, "season": season}, {"_id": 0})
    if not race:
        raise ApiError(404, "RACE_NOT_FOUND", "Race not found for this season")
    return race


def _require_race_open(race: Dict[str, Any]) -> None:
    verdict = evaluate(EventDescriptor.model_validate(race), utcnow(), ROSTER_RULES.urgent_window)
    if verdict.status == LOCKED:
        raise ApiError(400, "RACE_LOCKED", "Cannot submit a roster for a locked race")
    if verdict.status == EXPIRED:
        raise ApiError(400, "DEADLINE_PASSED", "Submission deadline has passed")
    if verdict.status == NO_RACE:
        raise ApiError(400, "RACE_NOT_FOUND", "Race has no scheduled sessions")


@race_router.get("/{season}")
async def list_races(
    season: int,
    status_filter: Optional[str] = None,
    sort: str = "round_number",
    order: str = "asc",
    user: Dict[str, Any] = Depends(current_user),
) -> Dict[str, Any]:
    valid_season(season)
    query: Dict[str, Any] = {"season": season}
    sort_field = sort if sort in ("round_number", "name", "submission_deadline", "is_locked") else "round_number"
    races = await races_collection.find(query, {"_id": 0}).sort(sort_field, _sort_direction(order)).to_list(length=None)
    if status_filter in ("scheduled", "active", "completed"):
        races = [r for r in races if any(e.get("status") == status_filter for e in r.get("events") or [])]
    return {"success": True, "season": season, "count": len(races), "races": races}


@race_router.get("/{season}/{race_id}")
async def get_race(season: int, race_id: str, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    return {"success": True, "season": season, "race": await _race_or_404(season, race_id)}


@race_router.get("/{season}/{race_id}/eligibility")
async def race_eligibility(season: int, race_id: str, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    race = await _race_or_404(season, race_id)
    verdict = evaluate(EventDescriptor.model_validate(race), utcnow(), ROSTER_RULES.urgent_window)
    remaining = verdict.time_remaining.total_seconds() if verdict.time_remaining else 0
    return {
        "success": True,
        "status": verdict.status,
        "message": verdict.reason,
        "eligible": verdict.can_submit,
        "can_submit": verdict.can_submit,
        "locked": verdict.status == LOCKED,
        "deadline_passed": verdict.status == EXPIRED,
        "deadline_soon": verdict.status == URGENT,
        "hours_remaining": verdict.hours_remaining,
        "time_remaining": remaining,
    }


@race_router.put("/{season}/{race_id}/lock")
async def set_race_lock(
    season: int, race_id: str, body: RaceLockIn, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    valid_season(season)
    race = await _race_or_404(season, race_id)
    await races_collection.update_one({"id": race_id, "season": season}, {"$set": {"is_locked": body.is_locked}})
    race["is_locked"] = body.is_locked
    logger.info("race %s lock=%s by=%s", race_id, body.is_locked, admin["id"])
    return {"success": True, "season": season, "race": race}


###########################
# Rosters
###########################

roster_router = APIRouter(prefix="/api/roster", tags=["roster"])


class RosterIn(BaseModel):
    user: str
    race: str
    drivers: List[str] = Field(min_length=1)
    budget_used: Optional[float] = None
    points_earned: float = 0


class RosterUpdate(BaseModel):
    drivers: List[str] = Field(min_length=1)
    budget_used: Optional[float] = None


class RosterCheckIn(BaseModel):
    user: str
    drivers: List[str] = Field(min_length=1)
    race: Optional[str] = None
    budget_used: Optional[float] = None


async def _drivers_or_404(season: int, driver_ids: List[str]) -> List[Competitor]:
    found: Dict[str, Competitor] = {}
    missing = []
    for driver_id in dict.fromkeys(driver_ids):
        doc = await drivers_collection.find_one({"id": driver_id, "season": season}, {"_id": 0})
        if doc:
            found[driver_id] = Competitor.model_validate(doc)
        else:
            missing.append(driver_id)
    if missing:
        raise ApiError(400, "DRIVER_NOT_FOUND", f"Drivers not found: {', '.join(missing)}")
    # keep repeats so the validator can report them
    return [found[d] for d in driver_ids]


def _require_valid_composition(drivers: List[Competitor], budget: float) -> float:
    cost = composition.total_cost(drivers)
    if cost > budget:
        raise ApiError(400, "BUDGET_EXCEEDED", f"Budget exceeded by {composition.format_money(cost - budget)}")
    verdict = composition.validate(drivers, budget, rules=ROSTER_RULES, check_race=False)
    if not verdict.valid:
        raise ApiError(400, "COMPOSITION_INVALID", f"Roster validation failed: {', '.join(verdict.violations)}")
    return cost


def _can_touch(roster: Dict[str, Any], user: Dict[str, Any]) -> bool:
    return roster.get("user") == user["id"] or user.get("role") == "admin"


@roster_router.get("/{season}")
async def list_rosters(
    season: int,
    user: Optional[str] = None,
    race: Optional[str] = None,
    sort: str = "created_at",
    order: str = "desc",
    me: Dict[str, Any] = Depends(current_user),
) -> Dict[str, Any]:
    valid_season(season)
    query: Dict[str, Any] = {"season": season}
    if user:
        query["user"] = user
    if race:
        query["race"] = race
    sort_field = sort if sort in ("created_at", "updated_at", "budget_used", "points_earned") else "created_at"
    rosters = await rosters_collection.find(query, {"_id": 0}).sort(sort_field, _sort_direction(order)).to_list(length=None)
    return {"success": True, "season": season, "count": len(rosters), "rosters": rosters}


@roster_router.get("/{season}/user/{user_id}")
async def user_rosters(season: int, user_id: str, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    if user_id != me["id"] and me.get("role") != "admin":
        raise ApiError(403, "FORBIDDEN", "You can only view your own rosters")
    rosters = await rosters_collection.find({"season": season, "user": user_id}, {"_id": 0}).sort("created_at", -1).to_list(length=None)
    total_points = sum(r.get("points_earned", 0) for r in rosters)
    return {
        "success": True,
        "season": season,
        "count": len(rosters),
        "rosters": rosters,
        "summary": {
            "total_rosters": len(rosters),
            "total_points": _round2(total_points),
            "total_budget_used": _round2(sum(r.get("budget_used", 0) for r in rosters)),
            "avg_points": _round2(total_points / len(rosters)) if rosters else 0,
        },
    }


# Declared before "/{season}/{roster_id}" so "stats" is never parsed as an id.
@roster_router.get("/{season}/stats")
async def roster_stats(season: int, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    rosters = await rosters_collection.find({"season": season}, {"_id": 0}).to_list(length=None)
    by_race: Dict[str, Dict[str, Any]] = {}
    for r in rosters:
        bucket = by_race.setdefault(r.get("race"), {"race": r.get("race"), "count": 0, "total_points": 0.0})
        bucket["count"] += 1
        bucket["total_points"] += r.get("points_earned", 0)
    for bucket in by_race.values():
        race = await races_collection.find_one({"id": bucket["race"], "season": season}, {"_id": 0})
        bucket["name"] = race.get("name") if race else None
        bucket["round_number"] = race.get("round_number") if race else None
        bucket["avg_points"] = _round2(bucket["total_points"] / bucket["count"])
        bucket["total_points"] = _round2(bucket["total_points"])

    top = sorted(rosters, key=lambda r: r.get("points_earned", 0), reverse=True)[:10]
    top_performers = []
    for r in top:
        owner = await users_collection.find_one({"id": r.get("user"), "season": season}, {"_id": 0, "pin": 0})
        top_performers.append({
            "roster": r.get("id"),
            "user": r.get("user"),
            "username": owner.get("username") if owner else None,
            "race": r.get("race"),
            "points_earned": r.get("points_earned", 0),
        })

    count = len(rosters)
    return {
        "success": True,
        "season": season,
        "stats": {
            "total": count,
            "avg_budget_used": _round2(sum(r.get("budget_used", 0) for r in rosters) / count) if count else 0,
            "avg_points": _round2(sum(r.get("points_earned", 0) for r in rosters) / count) if count else 0,
            "top_performers": top_performers,
            "by_race": sorted(by_race.values(), key=lambda b: (b["round_number"] is None, b["round_number"] or 0)),
        },
    }


@roster_router.post("/{season}/validate")
async def validate_roster(season: int, body: RosterCheckIn, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    """
    Dry-run a submission: run the same checks as create without writing.

    Problems are reported in ``validation.errors`` rather than raised, so the
    response is 200 even for an invalid roster.
    """
    valid_season(season)
    if body.user != me["id"] and me.get("role") != "admin":
        raise ApiError(403, "FORBIDDEN", "You can only validate your own roster")
    owner = await users_collection.find_one({"id": body.user, "season": season}, {"_id": 0, "pin": 0})
    if not owner:
        raise ApiError(404, "NOT_FOUND", "User not found for this season")
    budget = owner.get("budget", 0)

    errors: List[str] = []
    verdict = None
    if body.race:
        race = await races_collection.find_one({"id": body.race, "season": season}, {"_id": 0})
        if race:
            verdict = evaluate(EventDescriptor.model_validate(race), utcnow(), ROSTER_RULES.urgent_window)
        else:
            errors.append("Race not found for this season")

    drivers: List[Competitor] = []
    missing: List[str] = []
    for driver_id in body.drivers:
        doc = await drivers_collection.find_one({"id": driver_id, "season": season}, {"_id": 0})
        if doc:
            drivers.append(Competitor.model_validate(doc))
        elif driver_id not in missing:
            missing.append(driver_id)
    if missing:
        errors.append(f"Drivers not found: {', '.join(missing)}")

    checked = composition.validate(
        drivers, budget, verdict=verdict, rules=ROSTER_RULES, check_race=verdict is not None
    )
    errors.extend(checked.violations)

    cost = composition.total_cost(drivers)
    present = composition.present_categories(drivers)
    return {
        "success": True,
        "season": season,
        "validation": {
            "is_valid": not errors,
            "errors": errors,
            "calculated_budget": _round2(cost),
            "provided_budget": body.budget_used,
            "budget": {"available": budget, "used": _round2(cost), "remaining": _round2(budget - cost)},
            "categories": {
                "present": present,
                "missing": composition.missing_categories(drivers, ROSTER_RULES.required_categories),
            },
        },
    }


@roster_router.get("/{season}/{roster_id}")
async def get_roster(season: int, roster_id: str, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    roster = await rosters_collection.find_one({"id": roster_id, "season": season}, {"_id": 0})
    if not roster:
        raise ApiError(404, "NOT_FOUND", "Roster not found")
    return {"success": True, "season": season, "roster": roster}


@roster_router.post("/{season}", status_code=201)
async def create_roster(season: int, body: RosterIn, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    if body.user != me["id"] and me.get("role") != "admin":
        raise ApiError(403, "FORBIDDEN", "You can only submit your own roster")
    owner = await users_collection.find_one({"id": body.user, "season": season}, {"_id": 0, "pin": 0})
    if not owner:
        raise ApiError(404, "NOT_FOUND", "User not found for this season")
    race = await _race_or_404(season, body.race)
    _require_race_open(race)

    existing = await rosters_collection.find_one({"season": season, "user": body.user, "race": body.race})
    if existing:
        raise ApiError(409, "ROSTER_EXISTS", "User already has a roster for this race")

    drivers = await _drivers_or_404(season, body.drivers)
    cost = _require_valid_composition(drivers, owner.get("budget", 0))
    if body.budget_used is not None and abs(cost - body.budget_used) > 0.01:
        logger.info("budget_used mismatch user=%s provided=%s calculated=%s", body.user, body.budget_used, cost)

    now = utcnow()
    doc = {
        "id": str(uuid.uuid4()),
        "season": season,
        "user": body.user,
        "race": body.race,
        "drivers": body.drivers,
        "budget_used": cost,
        "points_earned": body.points_earned,
        "created_at": now,
        "updated_at": now,
    }
    await rosters_collection.insert_one(doc)
    doc.pop("_id", None)
    logger.info("roster created id=%s user=%s race=%s", doc["id"], body.user, body.race)
    return {"success": True, "message": "Roster created successfully", "season": season, "roster": doc}


@roster_router.put("/{season}/{roster_id}")
async def update_roster(
    season: int, roster_id: str, body: RosterUpdate, me: Dict[str, Any] = Depends(current_user)
) -> Dict[str, Any]:
    valid_season(season)
    roster = await rosters_collection.find_one({"id": roster_id, "season": season}, {"_id": 0})
    if not roster:
        raise ApiError(404, "NOT_FOUND", "Roster not found")
    if not _can_touch(roster, me):
        raise ApiError(403, "FORBIDDEN", "Not authorised to modify this roster")
    race = await _race_or_404(season, roster["race"])
    _require_race_open(race)

    owner = await users_collection.find_one({"id": roster["user"], "season": season}, {"_id": 0, "pin": 0})
    if not owner:
        raise ApiError(404, "NOT_FOUND", "User not found for this season")
    drivers = await _drivers_or_404(season, body.drivers)
    cost = _require_valid_composition(drivers, owner.get("budget", 0))

    update = {"drivers": body.drivers, "budget_used": cost, "updated_at": utcnow()}
    await rosters_collection.update_one({"id": roster_id, "season": season}, {"$set": update})
    roster.update(update)
    logger.info("roster updated id=%s user=%s", roster_id, roster["user"])
    return {"success": True, "message": "Roster updated successfully", "season": season, "roster": roster}


@roster_router.delete("/{season}/{roster_id}")
async def delete_roster(season: int, roster_id: str, me: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    roster = await rosters_collection.find_one({"id": roster_id, "season": season}, {"_id": 0})
    if not roster:
        raise ApiError(404, "NOT_FOUND", "Roster not found")
    if not _can_touch(roster, me):
        raise ApiError(403, "FORBIDDEN", "Not authorised to delete this roster")
    if me.get("role") != "admin":
        _require_race_open(await _race_or_404(season, roster["race"]))
    await rosters_collection.delete_one({"id": roster_id, "season": season})
    return {"success": True, "message": "Roster deleted successfully", "season": season}


###########################
# Seasons
###########################

season_router = APIRouter(prefix="/api/season", tags=["season"])

DELETE_CONFIRMATION = "DELETE_ALL_DATA"
COPYABLE = ("drivers", "users")


class SeasonInit(BaseModel):
    copy_from: Optional[int] = None
    collections: List[str] = Field(default_factory=lambda: list(COPYABLE))


class SeasonDelete(BaseModel):
    confirm_delete: str


def _has_data(stats: Dict[str, Any]) -> bool:
    return any(stats[k]["count"] for k in ("drivers", "users", "races"))


@season_router.get("")
async def list_seasons(user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    seasons = await _known_seasons()
    current = utcnow().year
    return {"success": True, "current": current, "count": len(seasons), "seasons": seasons}


@season_router.get("/{season}/stats")
async def season_stats(season: int, user: Dict[str, Any] = Depends(current_user)) -> Dict[str, Any]:
    valid_season(season)
    return {"success": True, "season": season, "stats": await _season_stats(season)}


@season_router.post("/{season}/initialize", status_code=201)
async def initialize_season(
    season: int, body: Optional[SeasonInit] = None, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    """
    Register a new season, optionally seeding it from an earlier one.

    Copied drivers keep their value (also recorded as ``previous_value``) and
    start on zero points; copied participants keep their PIN, role and budget.
    Races and rosters are never copied.
    """
    valid_season(season)
    body = body or SeasonInit()
    if _has_data(await _season_stats(season)) or await seasons_collection.find_one({"season": season}):
        raise ApiError(409, "CONFLICT", f"Season {season} already has existing data")

    copied = {"drivers": 0, "users": 0}
    if body.copy_from is not None:
        source = valid_season(body.copy_from)
        if source == season:
            raise ApiError(400, "BAD_REQUEST", "Cannot copy a season onto itself")
        unknown = [c for c in body.collections if c not in COPYABLE]
        if unknown:
            raise ApiError(400, "BAD_REQUEST", f"Cannot copy: {', '.join(unknown)}")
        if not _has_data(await _season_stats(source)):
            raise ApiError(404, "NOT_FOUND", f"Season {source} has no data to copy")

        if "drivers" in body.collections:
            for d in await drivers_collection.find({"season": source}, {"_id": 0}).to_list(length=None):
                d.update({"id": str(uuid.uuid4()), "season": season, "points": 0, "previous_value": d.get("value", 0)})
                await drivers_collection.insert_one(d)
                copied["drivers"] += 1
        if "users" in body.collections:
            for u in await users_collection.find({"season": source}, {"_id": 0}).to_list(length=None):
                u.update({"id": str(uuid.uuid4()), "season": season, "points": 0, "created_at": utcnow()})
                await users_collection.insert_one(u)
                copied["users"] += 1

    await seasons_collection.insert_one(
        {"season": season, "created_at": utcnow(), "created_by": admin["id"], "copied_from": body.copy_from}
    )
    logger.info("season %s initialised by=%s copy_from=%s copied=%s", season, admin["id"], body.copy_from, copied)
    return {
        "success": True,
        "message": f"Season {season} initialised successfully",
        "season": season,
        "copied_from": body.copy_from,
        "copied": copied,
    }


@season_router.delete("/{season}")
async def delete_season(
    season: int, body: SeasonDelete, admin: Dict[str, Any] = Depends(require_elevation)
) -> Dict[str, Any]:
    """Remove every record of a season. Refused for the current year and for the caller's own season."""
    valid_season(season)
    if body.confirm_delete != DELETE_CONFIRMATION:
        raise ApiError(400, "BAD_REQUEST", f"Set confirm_delete to '{DELETE_CONFIRMATION}' to delete a season")
    if season == utcnow().year:
        raise ApiError(403, "FORBIDDEN", "Cannot delete the current season")
    if season == admin.get("season"):
        raise ApiError(403, "FORBIDDEN", "Cannot delete the season you are signed in to")

    before = await _season_stats(season)
    deleted = {}
    for name, collection in (
        ("rosters", rosters_collection),
        ("races", races_collection),
        ("drivers", drivers_collection),
        ("users", users_collection),
    ):
        res = await collection.delete_many({"season": season})
        deleted[name] = res.deleted_count
    await seasons_collection.delete_many({"season": season})
    logger.warning("season %s deleted by=%s deleted=%s", season, admin["id"], deleted)
    return {"success": True, "message": f"Season {season} deleted", "season": season, "before": before, "deleted": deleted}


app.include_router(auth_router)
app.include_router(user_router)
app.include_router(driver_router)
app.include_router(race_router)
app.include_router(roster_router)
app.include_router(season_router)


def main() -> None:
    import uvicorn

    uvicorn.run("btcc_fantasy.server:app", host="0.0.0.0", port=8000)
