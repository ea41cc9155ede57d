"""Parcel Tracker — SPX Page Providers.

Fallback providers that read the carrier's public tracking page
instead of the JSON API:

  - SpxPageProvider: fetches the raw page directly
  - RenderedPageProvider: asks a headless-browser render service for
    the page (`GET <render_url>?url=<page>` → {"html": ...}), for when
    the raw page only fills in its events client-side

Both classify the newest event's message, since the page has no
separate status field.
"""

from __future__ import annotations

from typing import Optional
from urllib.parse import quote

from src.providers.client import PageClient
from src.providers.parsing import parse_tracking_html
from src.tracking.classifier import StatusClassifier
from src.tracking.errors import FetchError
from src.tracking.models import StatusSnapshot, TrackingEvent, utcnow
from src.utils.logger import get_logger

logger = get_logger(__name__)


def build_page_url(base_url: str, code: str) -> str:
    """The tracking page takes the bare code as its query string."""
    return f"{base_url}?{quote(code, safe='')}"


def snapshot_from_events(
    provider: str,
    code: str,
    events: list[TrackingEvent],
    classifier: StatusClassifier,
) -> StatusSnapshot:
    """Build a snapshot from page events, newest first.

    Raises:
        FetchError: If the page listed no events.
    """
    if not events:
        raise FetchError(provider, code, "no tracking events on page", upstream_miss=True)
    raw_status = events[0].description
    return StatusSnapshot(
        code=code,
        canonical_status=classifier.classify(raw_status),
        events=tuple(events),
        fetched_at=utcnow(),
        raw_status=raw_status,
        provider=provider,
    )


class SpxPageProvider:
    """Scrapes the public SPX tracking page."""

    name = "spx_page"

    def __init__(
        self,
        page_url: str,
        client: PageClient,
        classifier: Optional[StatusClassifier] = None,
    ) -> None:
        self.page_url = page_url
        self.client = client
        self.classifier = classifier or StatusClassifier()

    async def fetch(self, code: str) -> StatusSnapshot:
        """Scrape the page for a code.

        Raises:
            FetchError: On HTTP failure, or flagged as an upstream miss
                when the page is a 404 or lists no events.
        """
        url = build_page_url(self.page_url, code)
        logger.debug("Scraping tracking page for %s: %s", code, url)
        resp = await self.client.get(url, code, not_found_is_miss=True)
        events = parse_tracking_html(resp.text)
        return snapshot_from_events(self.name, code, events, self.classifier)

    async def close(self) -> None:
        await self.client.close()


class RenderedPageProvider:
    """Reads the tracking page through a headless-browser render service."""

    name = "rendered_page"

    def __init__(
        self,
        render_url: str,
        page_url: str,
        client: PageClient,
        classifier: Optional[StatusClassifier] = None,
    ) -> None:
        self.render_url = render_url
        self.page_url = page_url
        self.client = client
        self.classifier = classifier or StatusClassifier()

    async def fetch(self, code: str) -> StatusSnapshot:
        """Render the page through the render service and parse it.

        Raises:
            FetchError: If the render service fails or returns no html.
        """
        target = build_page_url(self.page_url, code)
        logger.debug("Rendering tracking page for %s via %s", code, self.render_url)
        resp = await self.client.get(self.render_url, code, params={"url": target})

        try:
            data = resp.json()
        except ValueError as e:
            raise FetchError(self.name, code, "render service returned invalid JSON") from e

        html = data.get("html") if isinstance(data, dict) else None
        if not html:
            error = data.get("error") if isinstance(data, dict) else None
            raise FetchError(self.name, code, error or "render service returned no html")

        events = parse_tracking_html(html)
        return snapshot_from_events(self.name, code, events, self.classifier)

    async def close(self) -> None:
        await self.client.close()
