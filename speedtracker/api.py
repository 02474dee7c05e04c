"""Manual-trigger boundary.

Translates a "test" request into a scheduler call and maps every outcome to
a machine-readable response. Routing and request parsing belong to whatever
web layer hosts this; it only needs to pass a TriggerRequest and send back the
TriggerResponse.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from pydantic import BaseModel, Field

from speedtracker.core.exceptions import (
    AlreadyRunning,
    Blocked,
    InvalidKey,
    SpeedTrackerError,
    StoreUnavailable,
)
from speedtracker.core.models import Target
from speedtracker.pipeline.scheduler import Scheduler

logger = logging.getLogger("speedtracker.api")


class TriggerRequest(BaseModel):
    user: str
    repo: str
    branch: str
    profile: str
    key: Optional[str] = None

    @property
    def target(self) -> Target:
        return Target(user=self.user, repo=self.repo, branch=self.branch)


class TriggerResponse(BaseModel):
    status_code: int
    body: dict[str, Any] = Field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status_code == 200

    def to_json(self) -> str:
        return json.dumps(self.body)


def _error(status_code: int, code: str, detail: Optional[str] = None) -> TriggerResponse:
    body: dict[str, Any] = {"success": False, "error": code}
    if detail:
        body["detail"] = detail
    return TriggerResponse(status_code=status_code, body=body)


async def handle_test_request(scheduler: Scheduler, request: TriggerRequest) -> TriggerResponse:
    """Run a manual test and describe the outcome.

    200 on success, 429 when the user is blocked, 409 when a run for the
    same target and profile is in flight, 500 for everything else.
    """
    try:
        result = await scheduler.run_now(request.target, request.profile, request.key)
    except Blocked:
        return _error(429, "BLOCKED")
    except AlreadyRunning:
        return _error(409, "ALREADY_RUNNING")
    except InvalidKey:
        return _error(500, "INVALID_KEY")
    except StoreUnavailable:
        return _error(500, "STORE_UNAVAILABLE")
    except SpeedTrackerError as e:
        logger.error("Test request for %s failed: %s", request.target.slug, e)
        return _error(500, "INTERNAL_ERROR")
    except Exception:
        logger.exception("Test request for %s crashed", request.target.slug)
        return _error(500, "INTERNAL_ERROR")

    if not result.succeeded:
        logger.error("Test for %s failed: %s", request.target.slug, result.error_detail)
        return _error(500, "TEST_FAILED", result.error_detail)

    return TriggerResponse(status_code=200, body={"success": True, **result.to_response()})
