"""
Slack user cache models.

Defines the records held in a cache snapshot, the roster returned by the
upstream adapter, and the typed results handed to the HTTP transport.
"""

from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


def normalize_email(email: str) -> str:
    """Normalize an email address for case-insensitive lookup."""
    return email.strip().lower()


# =====================================================================
# DIRECTORY RECORDS
# =====================================================================

class UserRecord(BaseModel):
    """A single workspace member as served by the cache."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(description="Upstream-assigned user ID (e.g., U024BE7LH)")
    display_name: str = Field(description="Name shown for the user")
    email: Optional[str] = Field(default=None, description="Absent for bots and service accounts")
    extra: Mapping[str, str] = Field(default_factory=dict, description="Additional profile attributes, read-only")
    is_active: bool = Field(default=True, description="False for deactivated members")

    @field_validator('id')
    @classmethod
    def validate_id(cls, v):
        """User IDs must be non-empty."""
        if not v or not v.strip():
            raise ValueError("User id cannot be empty")
        return v

    @field_validator('email')
    @classmethod
    def empty_email_is_none(cls, v):
        """Treat blank emails as missing."""
        if v is not None and not v.strip():
            return None
        return v

    @field_validator('extra')
    @classmethod
    def freeze_extra(cls, v):
        """Copy into a read-only mapping so published records cannot change."""
        return MappingProxyType(dict(v))

    @field_serializer('extra')
    def serialize_extra(self, v) -> Dict[str, str]:
        return dict(v)


class UserGroup(BaseModel):
    """A user group (e.g., @oncall) and the IDs of its members."""
    model_config = ConfigDict(frozen=True)

    id: str
    handle: str = Field(description="Mention handle without the leading @")
    name: str
    description: Optional[str] = None
    users: Tuple[str, ...] = Field(default_factory=tuple)


class Roster(BaseModel):
    """Complete result of one upstream pull."""
    users: List[UserRecord] = Field(default_factory=list)
    groups: List[UserGroup] = Field(default_factory=list)


# =====================================================================
# REFRESH STATUS
# =====================================================================

class RefreshError(BaseModel):
    """Outcome of a failed refresh attempt."""
    model_config = ConfigDict(frozen=True)

    kind: str = Field(description="network, timeout, rate_limited, malformed_response, auth or validation")
    message: str
    at: datetime


class CacheStatus(BaseModel):
    """Health view of the cache, used by readiness checks."""
    has_data: bool
    generation: int = 0
    user_count: int = 0
    group_count: int = 0
    built_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[RefreshError] = None
    staleness_seconds: Optional[float] = Field(default=None, description="Age of the served snapshot")
    refreshing: bool = False
    consecutive_failures: int = 0


# =====================================================================
# LOOKUP RESULTS
# =====================================================================

class LookupStatus(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    NOT_POPULATED = "not_populated"


class LookupResult(BaseModel):
    """
    Typed result of a cache read.

    The transport maps NOT_FOUND to 404 and NOT_POPULATED to 503; neither is
    raised as an exception.
    """
    status: LookupStatus
    result: Any = None
    generation: Optional[int] = None

    @property
    def found(self) -> bool:
        return self.status is LookupStatus.FOUND

    @classmethod
    def hit(cls, result: Any, generation: int) -> "LookupResult":
        return cls(status=LookupStatus.FOUND, result=result, generation=generation)

    @classmethod
    def not_found(cls, generation: int) -> "LookupResult":
        return cls(status=LookupStatus.NOT_FOUND, generation=generation)

    @classmethod
    def not_populated(cls) -> "LookupResult":
        return cls(status=LookupStatus.NOT_POPULATED)
