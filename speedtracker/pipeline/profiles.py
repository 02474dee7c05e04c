"""Profile parsing and caching.

Profiles are files committed to the monitored branch, either YAML front
matter (the SpeedTracker site format) or a plain YAML document. The cache
keeps one immutable snapshot per (target, profile) and replaces it whole on
refresh, so a concurrent reader sees either the old or the new entry.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import yaml
from pydantic import ValidationError

from speedtracker.core.exceptions import GatewayError, GatewayNotFound, ProfileUnavailable
from speedtracker.core.models import Profile, Target
from speedtracker.gateway.github import GitHubGateway

logger = logging.getLogger("speedtracker.pipeline.profiles")

_FRONT_MATTER = re.compile(r"\A\s*---[ \t]*\r?\n(.*?)\r?\n---[ \t]*(?:\r?\n|\Z)", re.DOTALL)


def parse_profile(profile_name: str, content: str) -> Profile:
    """Build a Profile from raw file content.

    Raises:
        ProfileUnavailable: Content is not a YAML mapping or has no URL.
    """
    match = _FRONT_MATTER.match(content)
    document = match.group(1) if match else content
    try:
        data = yaml.safe_load(document)
    except yaml.YAMLError as e:
        raise ProfileUnavailable(f"profile: malformed YAML ({e.__class__.__name__})") from e
    if not isinstance(data, dict):
        raise ProfileUnavailable("profile: expected a mapping")

    raw_parameters = data.get("parameters") or {}
    if not isinstance(raw_parameters, dict):
        raise ProfileUnavailable("profile: parameters must be a mapping")
    parameters: dict[str, Any] = dict(raw_parameters)
    url = parameters.pop("url", None) or data.get("url")
    if not url or not isinstance(url, str):
        raise ProfileUnavailable("profile: missing url")

    interval = data.get("interval")
    if interval is not None:
        try:
            interval = float(interval)
        except (TypeError, ValueError) as e:
            raise ProfileUnavailable(f"profile: invalid interval {interval!r}") from e
        if interval <= 0:
            raise ProfileUnavailable(f"profile: invalid interval {interval!r}")

    key = data.get("key")
    key_sha256 = data.get("keySha256") or data.get("key_sha256")
    try:
        return Profile(
            name=str(data.get("name") or profile_name),
            url=url,
            key=str(key) if key is not None else None,
            key_sha256=str(key_sha256).lower() if key_sha256 else None,
            interval_hours=interval,
            parameters=parameters,
        )
    except ValidationError as e:
        raise ProfileUnavailable(f"profile: invalid fields ({e.error_count()} error(s))") from e


@dataclass(frozen=True)
class _CacheEntry:
    profile: Profile
    loaded_at: float


class ProfileCache:
    """Freshness-window cache of remote profiles, keyed by (target, profile)."""

    def __init__(
        self,
        gateway: GitHubGateway,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[tuple[Target, str], _CacheEntry] = {}

    def get_fresh(self, target: Target, profile_name: str) -> Optional[Profile]:
        entry = self._entries.get((target, profile_name))
        if entry is None:
            return None
        if self._clock() - entry.loaded_at > self.ttl_seconds:
            return None
        return entry.profile

    async def resolve(self, target: Target, profile_name: str, refresh: bool = False) -> Profile:
        """Return a fresh profile, fetching it through the gateway when needed.

        Raises:
            ProfileUnavailable: Fetch or parse failed. The message names the step.
        """
        if not refresh:
            cached = self.get_fresh(target, profile_name)
            if cached is not None:
                return cached

        try:
            content = await self.gateway.fetch_profile_file(target, profile_name)
        except GatewayNotFound as e:
            raise ProfileUnavailable("profile: not found") from e
        except GatewayError as e:
            raise ProfileUnavailable(f"profile: fetch failed ({e})") from e

        profile = parse_profile(profile_name, content)
        self._entries[(target, profile_name)] = _CacheEntry(profile=profile, loaded_at=self._clock())
        logger.debug("Profile %s cached for %s", profile_name, target.slug)
        return profile

    def invalidate(self, target: Target, profile_name: Optional[str] = None) -> None:
        if profile_name is not None:
            self._entries.pop((target, profile_name), None)
            return
        for key in [k for k in self._entries if k[0] == target]:
            self._entries.pop(key, None)
