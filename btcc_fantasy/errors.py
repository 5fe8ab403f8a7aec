"""
Failure taxonomy and the uniform result envelope.

Every engine and client operation returns an :class:`ApiResult`; callers
branch on ``success`` instead of catching exceptions.  Backend failures are
re-routed into the nearest actionable kind, preferring the structured
``code`` the server sends and falling back to keyword matching on the
message for older deployments.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    AUTHORIZATION = "authorization"
    CONSTRAINT = "constraint"
    ELIGIBILITY = "eligibility"
    TRANSPORT = "transport"


class FailureKind(str, Enum):
    DEADLINE = "deadline"
    LOCKED = "locked"
    BUDGET = "budget"
    DRIVER = "driver"
    RACE = "race"
    AUTHORIZATION = "authorization"
    COMPOSITION = "composition"
    CONFLICT = "conflict"
    UNEXPECTED = "unexpected"


FAILURE_MESSAGES = {
    FailureKind.DEADLINE: "Submission deadline has passed for this race.",
    FailureKind.LOCKED: "This race has been locked by administrators.",
    FailureKind.BUDGET: "Team value exceeds your available budget.",
    FailureKind.DRIVER: "One or more selected drivers are invalid. Please refresh and try again.",
    FailureKind.RACE: "Race information is invalid. Please refresh the page.",
    FailureKind.COMPOSITION: "Your team does not meet the roster rules. Please review it and try again.",
    FailureKind.AUTHORIZATION: "Your session or elevation is no longer valid. Please sign in or elevate again.",
    FailureKind.CONFLICT: "A team already exists for this race. Please refresh and try again.",
    FailureKind.UNEXPECTED: "An unexpected error occurred. Please try again.",
}

# Server error codes, see server.ApiError
_CODE_TO_KIND = {
    "DEADLINE_PASSED": FailureKind.DEADLINE,
    "RACE_LOCKED": FailureKind.LOCKED,
    "BUDGET_EXCEEDED": FailureKind.BUDGET,
    "COMPOSITION_INVALID": FailureKind.COMPOSITION,
    "DRIVER_NOT_FOUND": FailureKind.DRIVER,
    "RACE_NOT_FOUND": FailureKind.RACE,
    "ROSTER_EXISTS": FailureKind.CONFLICT,
    "UNAUTHORIZED": FailureKind.AUTHORIZATION,
    "FORBIDDEN": FailureKind.AUTHORIZATION,
    "ELEVATION_REQUIRED": FailureKind.AUTHORIZATION,
}

# first match wins
_KEYWORDS = (
    ("deadline", FailureKind.DEADLINE),
    ("locked", FailureKind.LOCKED),
    ("budget", FailureKind.BUDGET),
    ("driver", FailureKind.DRIVER),
    ("race", FailureKind.RACE),
)

_KIND_TO_CATEGORY = {
    FailureKind.DEADLINE: ErrorCategory.ELIGIBILITY,
    FailureKind.LOCKED: ErrorCategory.ELIGIBILITY,
    FailureKind.BUDGET: ErrorCategory.CONSTRAINT,
    FailureKind.DRIVER: ErrorCategory.CONSTRAINT,
    FailureKind.COMPOSITION: ErrorCategory.CONSTRAINT,
    FailureKind.AUTHORIZATION: ErrorCategory.AUTHORIZATION,
}


def classify_failure(message: Optional[str], code: Optional[str] = None, status: int = 0) -> FailureKind:
    if code and code in _CODE_TO_KIND:
        return _CODE_TO_KIND[code]
    if status in (401, 403):
        return FailureKind.AUTHORIZATION
    text = (message or "").lower()
    for keyword, kind in _KEYWORDS:
        if keyword in text:
            return kind
    if status == 409:
        return FailureKind.CONFLICT
    return FailureKind.UNEXPECTED


def category_for(kind: FailureKind) -> ErrorCategory:
    return _KIND_TO_CATEGORY.get(kind, ErrorCategory.TRANSPORT)


@dataclass
class ApiResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    status: int = 0
    category: Optional[ErrorCategory] = None
    code: Optional[str] = None
    kind: Optional[FailureKind] = None

    @classmethod
    def ok(cls, data: Any = None, status: int = 200) -> "ApiResult":
        return cls(success=True, data=data, status=status)

    @classmethod
    def fail(
        cls,
        error: str,
        category: ErrorCategory,
        *,
        status: int = 0,
        code: Optional[str] = None,
        kind: Optional[FailureKind] = None,
        data: Any = None,
    ) -> "ApiResult":
        return cls(success=False, data=data, error=error, status=status, category=category, code=code, kind=kind)

    @classmethod
    def from_backend(cls, message: Optional[str], *, status: int = 0, code: Optional[str] = None) -> "ApiResult":
        """Wrap a failed backend call, keeping the backend message verbatim."""
        kind = classify_failure(message, code, status)
        return cls.fail(
            message or FAILURE_MESSAGES[kind],
            category_for(kind),
            status=status,
            code=code,
            kind=kind,
        )

    @property
    def user_message(self) -> Optional[str]:
        """Actionable text for the presentation layer."""
        if self.success:
            return None
        if self.category in (ErrorCategory.CONSTRAINT, ErrorCategory.ELIGIBILITY) and self.kind is None:
            return self.error
        if self.kind is not None:
            return FAILURE_MESSAGES[self.kind]
        return self.error
