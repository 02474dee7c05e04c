"""GitHub gateway for SpeedTracker.

Isolates every call to the code-hosting API behind a narrow async interface:
fetch a profile file from a branch, list and accept repository invitations,
and write a commit status. Reads retry with exponential backoff; writes are
sent once and retried, if at all, by the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from speedtracker.core.config import GitHubConfig
from speedtracker.core.exceptions import (
    GatewayError,
    GatewayNetworkError,
    GatewayNotFound,
    GatewayRateLimited,
    GatewayUnauthorized,
)
from speedtracker.core.models import CommitState, Target

logger = logging.getLogger("speedtracker.gateway.github")

_MAX_DESCRIPTION = 140


class Invitation(BaseModel):
    """A pending repository collaboration invitation."""
    id: int
    full_name: str


class GitHubGateway:
    """Async client for the GitHub REST v3 API.

    The gateway holds no state besides its HTTP client, so a single instance
    can be shared by the executor and any connect tooling.
    """

    def __init__(self, config: Optional[GitHubConfig] = None, token: Optional[str] = None):
        self.config = config or GitHubConfig()
        self.token = token if token is not None else self.config.token
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.config.timeout_seconds),
            )
        return self._client

    def _headers(self, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {
            "Accept": accept,
            "User-Agent": "speedtracker",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------

    def profile_path(self, profile_name: str) -> str:
        directory = self.config.profiles_dir.strip("/")
        filename = f"{profile_name}{self.config.profiles_ext}"
        return f"{directory}/{filename}" if directory else filename

    async def fetch_profile_file(self, target: Target, profile_name: str) -> str:
        """Return the raw content of the profile file on the target's branch.

        Raises:
            GatewayNotFound: The file does not exist on that branch.
            GatewayError: Any other failure after retries.
        """
        path = quote(self.profile_path(profile_name))
        resp = await self._read(
            "GET",
            f"/repos/{quote(target.user)}/{quote(target.repo)}/contents/{path}",
            params={"ref": target.branch},
            accept="application/vnd.github.raw+json",
        )
        return resp.text

    async def resolve_branch_head(self, target: Target) -> str:
        resp = await self._read(
            "GET",
            f"/repos/{quote(target.user)}/{quote(target.repo)}/commits/{quote(target.branch, safe='')}",
        )
        sha = resp.json().get("sha")
        if not sha:
            raise GatewayError(f"No commit SHA returned for {target.slug}")
        return sha

    async def set_commit_status(
        self,
        target: Target,
        state: CommitState,
        description: str,
        context: Optional[str] = None,
        target_url: Optional[str] = None,
    ) -> None:
        """Write a commit status on the head of the target's branch."""
        sha = await self.resolve_branch_head(target)
        payload: dict[str, Any] = {
            "state": state.value,
            "description": description[:_MAX_DESCRIPTION],
            "context": context or self.config.status_context,
        }
        if target_url:
            payload["target_url"] = target_url
        await self._write(
            "POST",
            f"/repos/{quote(target.user)}/{quote(target.repo)}/statuses/{sha}",
            json=payload,
        )
        logger.info("Commit status %s set on %s@%s", state.value, target.slug, sha[:7])

    async def list_pending_invitations(self) -> list[Invitation]:
        resp = await self._read("GET", "/user/repository_invitations")
        invitations = []
        for item in resp.json():
            repo = item.get("repository") or {}
            invitations.append(Invitation(id=item["id"], full_name=repo.get("full_name", "")))
        return invitations

    async def accept_invitation(self, invitation_id: int) -> None:
        await self._write("PATCH", f"/user/repository_invitations/{invitation_id}")
        logger.info("Accepted repository invitation %d", invitation_id)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # -------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------

    async def _read(
        self,
        method: str,
        path: str,
        params: Optional[dict[str, Any]] = None,
        accept: str = "application/vnd.github+json",
    ) -> httpx.Response:
        """Idempotent request with exponential backoff on retryable errors."""
        attempts = max(1, self.config.read_retries)
        last_error: Optional[GatewayError] = None

        for attempt in range(attempts):
            try:
                resp = await self.client.request(
                    method, f"{self.base_url}{path}", params=params, headers=self._headers(accept),
                )
                _raise_for_status(resp)
                return resp
            except (GatewayRateLimited, GatewayNetworkError) as e:
                last_error = e
            except GatewayError as e:
                if e.status_code is None or e.status_code < 500:
                    raise
                last_error = e
            except httpx.TransportError as e:
                last_error = GatewayNetworkError(f"Network error: {e}")

            if attempt < attempts - 1:
                delay = _backoff_delay(attempt, self.config.backoff_seconds)
                logger.warning("%s %s failed (%s). Retrying in %.1fs", method, path, last_error, delay)
                await asyncio.sleep(delay)

        assert last_error is not None
        raise last_error

    async def _write(self, method: str, path: str, json: Optional[dict[str, Any]] = None) -> httpx.Response:
        try:
            resp = await self.client.request(
                method, f"{self.base_url}{path}", json=json, headers=self._headers(),
            )
        except httpx.TransportError as e:
            raise GatewayNetworkError(f"Network error: {e}") from e
        _raise_for_status(resp)
        return resp


def _raise_for_status(resp: httpx.Response) -> None:
    if resp.is_success:
        return

    status = resp.status_code
    message = _error_message(resp)
    if status == 404:
        raise GatewayNotFound(f"Not found: {resp.request.url.path}", status_code=status)
    if status == 429 or (status == 403 and resp.headers.get("x-ratelimit-remaining") == "0"):
        raise GatewayRateLimited(f"Rate limited: {message}", status_code=status)
    if status in (401, 403):
        raise GatewayUnauthorized(f"Unauthorized: {message}", status_code=status)
    raise GatewayError(f"GitHub API error {status}: {message}", status_code=status)


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict):
        return str(data.get("message", data))[:200]
    return str(data)[:200]


def _backoff_delay(attempt: int, base_seconds: float = 1.0) -> float:
    """Exponential backoff: 1s, 2s, 4s, ..."""
    return min(base_seconds * (2 ** attempt), 30)
