"""Measurement providers for SpeedTracker.

A provider takes a resolved profile and returns raw page-load metrics. The
executor bounds every call with its own timeout, so providers are free to
poll until the remote test completes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional, Protocol

import httpx

from speedtracker.core.config import MeasurementConfig
from speedtracker.core.exceptions import MeasurementFailed
from speedtracker.core.models import Measurement, Profile

logger = logging.getLogger("speedtracker.measurement")

# First-view metrics copied into a result, in WebPageTest naming.
TRACKED_METRICS: tuple[str, ...] = (
    "loadTime",
    "SpeedIndex",
    "TTFB",
    "fullyLoaded",
    "render",
    "visualComplete",
    "bytesIn",
    "requests",
    "domElements",
    "firstContentfulPaint",
    "largestContentfulPaint",
)

_STATUS_COMPLETE = 200
_STATUS_ERROR = 400


class MeasurementProvider(Protocol):
    async def measure(self, profile: Profile) -> Measurement: ...


def normalize_metrics(raw: dict[str, Any]) -> dict[str, float]:
    """Extract numeric first-view metrics from a WebPageTest result body.

    Prefers the first run and falls back to the median. Missing or
    non-numeric values are dropped rather than zero-filled.
    """
    data = raw.get("data", raw) if isinstance(raw, dict) else {}
    first_view: dict[str, Any] = {}
    runs = data.get("runs") or {}
    first_run = runs.get("1") if isinstance(runs, dict) else None
    if isinstance(first_run, dict) and isinstance(first_run.get("firstView"), dict):
        first_view = first_run["firstView"]
    elif isinstance(data.get("median"), dict) and isinstance(data["median"].get("firstView"), dict):
        first_view = data["median"]["firstView"]

    metrics: dict[str, float] = {}
    for name in TRACKED_METRICS:
        value = first_view.get(name)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            continue
        metrics[name] = float(value)
    return metrics


class WebPageTestProvider:
    """Runs tests on a WebPageTest instance and polls until they complete."""

    def __init__(self, config: Optional[MeasurementConfig] = None, api_key: Optional[str] = None):
        self.config = config or MeasurementConfig()
        self.api_key = api_key if api_key is not None else self.config.api_key
        self.base_url = self.config.base_url.rstrip("/")
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60))
        return self._client

    async def measure(self, profile: Profile) -> Measurement:
        test_id = await self._submit(profile)
        logger.info("WebPageTest %s started for %s", test_id, profile.url)

        while True:
            body = await self._get_json("/jsonResult.php", {"test": test_id})
            status = int(body.get("statusCode", 0))
            if status == _STATUS_COMPLETE:
                return Measurement(test_id=test_id, metrics=normalize_metrics(body), raw=body)
            if status >= _STATUS_ERROR:
                raise MeasurementFailed(
                    f"WebPageTest {test_id} failed: {body.get('statusText', status)}"
                )
            logger.debug("WebPageTest %s pending (%s)", test_id, body.get("statusText", status))
            await asyncio.sleep(self.config.poll_interval_seconds)

    async def _submit(self, profile: Profile) -> str:
        params: dict[str, Any] = {
            key: value for key, value in profile.parameters.items()
            if isinstance(value, (str, int, float, bool))
        }
        params.update({"url": profile.url, "f": "json"})
        if self.api_key:
            params["k"] = self.api_key

        body = await self._get_json("/runtest.php", params)
        if int(body.get("statusCode", 0)) != _STATUS_COMPLETE:
            raise MeasurementFailed(f"WebPageTest rejected test: {body.get('statusText', 'unknown error')}")
        test_id = (body.get("data") or {}).get("testId")
        if not test_id:
            raise MeasurementFailed("WebPageTest response did not include a test id")
        return test_id

    async def _get_json(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            resp = await self.client.get(f"{self.base_url}{path}", params=params)
            resp.raise_for_status()
            body = resp.json()
        except httpx.HTTPStatusError as e:
            raise MeasurementFailed(f"WebPageTest HTTP {e.response.status_code}") from e
        except httpx.TransportError as e:
            raise MeasurementFailed(f"WebPageTest unreachable: {e}") from e
        except ValueError as e:
            raise MeasurementFailed(f"WebPageTest returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise MeasurementFailed("WebPageTest returned an unexpected payload")
        return body

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
