"""Parcel Tracker — Tracking API Provider.

Primary status source: a remote JSON tracking API reached at
`GET <base_url>/<code>`, answering

    {"success": true,
     "tracking": {"status": "Em trânsito",
                  "events": [{"date": "...", "time": "...",
                              "description": "...", "timestamp": ...}]}}

or {"success": false, "error": "..."}.

Uses aiohttp for HTTP calls.
"""

from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import quote

import aiohttp

from src.providers.parsing import parse_event_time
from src.tracking.classifier import StatusClassifier
from src.tracking.errors import FetchError
from src.tracking.models import StatusSnapshot, TrackingEvent, utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_STATUS = "Em processamento"


def _parse_events(raw_events: Any) -> tuple[TrackingEvent, ...]:
    if not isinstance(raw_events, list):
        return ()
    events: list[TrackingEvent] = []
    for item in raw_events:
        if not isinstance(item, dict):
            continue
        raw_time = " ".join(
            str(part) for part in (item.get("date"), item.get("time")) if part
        )
        timestamp = parse_event_time(item.get("timestamp")) or parse_event_time(raw_time)
        events.append(TrackingEvent(
            description=str(item.get("description", "")),
            timestamp=timestamp,
            raw_time=raw_time,
        ))
    return tuple(events)


class TrackingApiProvider:
    """Client for the remote tracking JSON API.

    Attributes:
        base_url: API root; the tracking code is appended as a path segment.
        name: Provider name ('tracking_api').
    """

    name = "tracking_api"

    def __init__(
        self,
        base_url: str,
        user_agent: str,
        timeout_seconds: float,
        classifier: Optional[StatusClassifier] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.user_agent = user_agent
        self.timeout_seconds = timeout_seconds
        self.classifier = classifier or StatusClassifier()
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers={"User-Agent": self.user_agent, "Accept": "application/json"},
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            )
            logger.debug("Tracking API session created")
        return self._session

    async def fetch(self, code: str) -> StatusSnapshot:
        """Look a code up on the API.

        Raises:
            FetchError: On network errors, non-2xx responses, malformed
                JSON, or an explicit `success: false`. A 404 or
                `success: false` is flagged as an upstream miss.
        """
        url = f"{self.base_url}/{quote(code, safe='')}"
        logger.debug("Calling tracking API: %s", url)

        session = self._get_session()
        try:
            async with session.get(url) as resp:
                if resp.status == 404:
                    raise FetchError(self.name, code, "not found upstream (404)", upstream_miss=True)
                if resp.status >= 400:
                    raise FetchError(self.name, code, f"HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise FetchError(self.name, code, "timeout") from e
        except aiohttp.ClientError as e:
            raise FetchError(self.name, code, f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise FetchError(self.name, code, "malformed JSON response") from e

        return self._to_snapshot(code, data)

    def _to_snapshot(self, code: str, data: Any) -> StatusSnapshot:
        if not isinstance(data, dict):
            raise FetchError(self.name, code, "unexpected response shape")
        if not data.get("success"):
            raise FetchError(
                self.name, code, str(data.get("error") or "API reported failure"),
                upstream_miss=True,
            )

        tracking = data.get("tracking")
        if not isinstance(tracking, dict):
            raise FetchError(self.name, code, "response has no tracking section")

        raw_status = str(tracking.get("status") or _DEFAULT_STATUS)
        return StatusSnapshot(
            code=code,
            canonical_status=self.classifier.classify(raw_status),
            events=_parse_events(tracking.get("events")),
            fetched_at=utcnow(),
            raw_status=raw_status,
            provider=self.name,
        )

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
            self._session = None
            logger.debug("Tracking API session closed")

    async def __aenter__(self) -> "TrackingApiProvider":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.close()
