"""
Domain models shared by the engine, the API client and the server.

Identifiers are uuid strings.  Every model also accepts the legacy ``_id``
key so payloads exported from the old Mongo collections still validate.
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

DRIVER_CATEGORIES = ("M", "JS", "I")


class Competitor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    name: str
    value: float = Field(default=0, ge=0)
    categories: List[str]
    points: float = 0
    previous_value: float = 0
    image_url: Optional[str] = None
    description: Optional[str] = None
    season: Optional[int] = None

    @field_validator("categories")
    @classmethod
    def _one_or_two_categories(cls, v: List[str]) -> List[str]:
        if not 1 <= len(v) <= 2:
            raise ValueError("Categories must contain 1 or 2 items")
        if len(set(v)) != len(v):
            raise ValueError("Categories must not repeat")
        return v


class SubEvent(BaseModel):
    title: str
    start_time: datetime
    end_time: datetime
    status: str = "scheduled"


class EventDescriptor(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    round_number: int
    name: str
    location: Optional[str] = None
    events: List[SubEvent] = Field(default_factory=list)
    submission_deadline: datetime
    is_locked: bool = False
    season: Optional[int] = None


class Participant(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    username: str
    role: str = "user"  # "admin" | "user"
    budget: float = Field(default=0, ge=0)
    points: float = 0
    season: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Roster(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(validation_alias=AliasChoices("id", "_id"))
    user: str
    race: str
    drivers: List[str] = Field(default_factory=list)
    budget_used: float = 0
    points_earned: float = 0
    season: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("user", "race", mode="before")
    @classmethod
    def _ref_to_id(cls, v: Any) -> Any:
        # populated references come back as documents
        if isinstance(v, dict):
            return v.get("id") or v.get("_id")
        return v

    @field_validator("drivers", mode="before")
    @classmethod
    def _driver_refs_to_ids(cls, v: Any) -> Any:
        if not isinstance(v, list):
            return v
        return [(d.get("id") or d.get("_id")) if isinstance(d, dict) else d for d in v]


class ElevationGrant(BaseModel):
    token: str
    expires_at: datetime
