"""Pydantic data models for SpeedTracker.

Defines the data contracts shared by the scheduler, executor, result store
and gateway. Every persisted row and in-flight message has a model here.
"""

from __future__ import annotations

import enum
import uuid
from datetime import UTC, datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


def _new_uuid() -> uuid.UUID:
    return uuid.uuid4()


def _now() -> datetime:
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TriggerSource(str, enum.Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class ResultStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    BLOCKED = "blocked"
    INVALID_KEY = "invalid-key"


class CommitState(str, enum.Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Domain models
# ---------------------------------------------------------------------------

class Target(BaseModel):
    """A monitored site: one branch of one repository."""
    model_config = ConfigDict(frozen=True)

    user: str
    repo: str
    branch: str

    @property
    def slug(self) -> str:
        return f"{self.user}/{self.repo}/{self.branch}"

    @classmethod
    def parse(cls, slug: str) -> Target:
        parts = slug.strip("/").split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Expected 'user/repo/branch', got '{slug}'")
        return cls(user=parts[0], repo=parts[1], branch=parts[2])

    def __str__(self) -> str:
        return self.slug


class Profile(BaseModel):
    """Snapshot of a profile file fetched from the target's branch."""
    model_config = ConfigDict(frozen=True)

    name: str
    url: str
    key: Optional[str] = None
    key_sha256: Optional[str] = None
    interval_hours: Optional[float] = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    fetched_at: datetime = Field(default_factory=_now)

    @property
    def has_key(self) -> bool:
        return bool(self.key or self.key_sha256)


class Job(BaseModel):
    """One request to run a test for a target and profile."""
    target: Target
    profile_name: str
    requested_key: Optional[str] = None
    triggered_by: TriggerSource = TriggerSource.SCHEDULED
    created_at: datetime = Field(default_factory=_now)

    @property
    def flight_key(self) -> tuple[Target, str]:
        return (self.target, self.profile_name)


class Result(BaseModel):
    """Immutable outcome of one executed job."""
    model_config = ConfigDict(frozen=True)

    id: uuid.UUID = Field(default_factory=_new_uuid)
    target: Target
    profile_name: str
    timestamp: datetime = Field(default_factory=_now)
    status: ResultStatus
    metrics: dict[str, float] = Field(default_factory=dict)
    error_detail: Optional[str] = None
    triggered_by: TriggerSource = TriggerSource.SCHEDULED
    provider_test_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ResultStatus.SUCCESS

    def to_response(self) -> dict[str, Any]:
        """Serialized form returned to manual-trigger callers."""
        body: dict[str, Any] = {
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "metrics": dict(self.metrics),
        }
        if self.provider_test_id:
            body["testId"] = self.provider_test_id
        if self.error_detail:
            body["detail"] = self.error_detail
        return body


class Measurement(BaseModel):
    """Raw output of one measurement provider call."""
    test_id: Optional[str] = None
    metrics: dict[str, float] = Field(default_factory=dict)
    raw: dict[str, Any] = Field(default_factory=dict)
