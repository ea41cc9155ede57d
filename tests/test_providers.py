from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import httpx
import pytest
from aiohttp import web
from aiohttp import test_utils

from src.providers.client import PageClient
from src.providers.parsing import parse_event_time, parse_tracking_html
from src.providers.spx_page import RenderedPageProvider, SpxPageProvider
from src.providers.tracking_api import TrackingApiProvider
from src.tracking.errors import FetchError
from src.tracking.models import CanonicalStatus
from tests.fakes import CODE

PAGE_HTML = """
<html><body>
  <div class="nss-comp-tracking-item">
    <div class="time">01 May 2024 14:30:00</div>
    <div class="message">Pedido saiu para entrega</div>
  </div>
  <div class="nss-comp-tracking-item">
    <div class="time">30 Apr 2024 09:00:00</div>
    <div class="message">Em trânsito <b>para</b> São Paulo</div>
  </div>
  <div class="nss-comp-tracking-item">
    <div class="time">29 Apr 2024</div>
    <div class="message"></div>
  </div>
</body></html>
"""


# ── Page parsing ─────────────────────────────────────────


def test_parse_tracking_html_reads_events_in_page_order() -> None:
    events = parse_tracking_html(PAGE_HTML)

    assert [e.description for e in events] == [
        "Pedido saiu para entrega",
        "Em trânsito para São Paulo",
    ]
    assert events[0].timestamp == datetime(2024, 5, 1, 14, 30)
    assert events[0].raw_time == "01 May 2024 14:30:00"


def test_parse_tracking_html_without_events() -> None:
    assert parse_tracking_html("<html><body>Nada</body></html>") == []


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (1714564800, datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
        (1714564800000, datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
        ("1714564800", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
        ("2024-05-01T12:00:00Z", datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)),
        ("01/05/2024 12:00", datetime(2024, 5, 1, 12, 0)),
        ("ontem", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_event_time(raw, expected) -> None:
    assert parse_event_time(raw) == expected


# ── SPX page providers (httpx.MockTransport) ─────────────


def _client(handler, name: str = "spx_page") -> PageClient:
    return PageClient(name, "test-agent", 5, transport=httpx.MockTransport(handler))


def test_spx_page_provider_classifies_newest_event() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, text=PAGE_HTML)

    provider = SpxPageProvider("https://spx.example/track", _client(handler))
    snapshot = asyncio.run(provider.fetch(CODE))

    assert snapshot.canonical_status is CanonicalStatus.OUT_FOR_DELIVERY
    assert snapshot.raw_status == "Pedido saiu para entrega"
    assert snapshot.provider == "spx_page"
    assert len(snapshot.events) == 2
    assert str(seen[0].url) == f"https://spx.example/track?{CODE}"
    assert seen[0].headers["User-Agent"] == "test-agent"


def test_spx_page_without_events_is_fetch_error() -> None:
    provider = SpxPageProvider(
        "https://spx.example/track",
        _client(lambda request: httpx.Response(200, text="<html></html>")),
    )
    with pytest.raises(FetchError, match="no tracking events") as exc_info:
        asyncio.run(provider.fetch(CODE))
    assert exc_info.value.upstream_miss is True


@pytest.mark.parametrize(
    ("status", "reason", "miss"),
    [(404, "not found upstream", True), (503, "HTTP 503", False)],
)
def test_spx_page_http_errors(status, reason, miss) -> None:
    provider = SpxPageProvider(
        "https://spx.example/track",
        _client(lambda request: httpx.Response(status)),
    )
    with pytest.raises(FetchError) as exc_info:
        asyncio.run(provider.fetch(CODE))
    assert exc_info.value.reason == reason
    assert exc_info.value.upstream_miss is miss


def test_spx_page_network_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    provider = SpxPageProvider("https://spx.example/track", _client(handler))
    with pytest.raises(FetchError, match="ConnectError"):
        asyncio.run(provider.fetch(CODE))


def test_rendered_page_provider_parses_render_service_html() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"html": PAGE_HTML})

    provider = RenderedPageProvider(
        "https://render.example/api/scrape",
        "https://spx.example/track",
        _client(handler, "rendered_page"),
    )
    snapshot = asyncio.run(provider.fetch(CODE))

    assert snapshot.provider == "rendered_page"
    assert snapshot.canonical_status is CanonicalStatus.OUT_FOR_DELIVERY
    assert seen[0].url.params["url"] == f"https://spx.example/track?{CODE}"


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"error": "browser crashed"}),
        httpx.Response(200, json=["unexpected"]),
    ],
)
def test_rendered_page_bad_responses(response) -> None:
    provider = RenderedPageProvider(
        "https://render.example/api/scrape",
        "https://spx.example/track",
        _client(lambda request: response, "rendered_page"),
    )
    with pytest.raises(FetchError):
        asyncio.run(provider.fetch(CODE))


def test_rendered_page_service_404_is_not_an_unknown_code() -> None:
    provider = RenderedPageProvider(
        "https://render.example/api/scrape",
        "https://spx.example/track",
        _client(lambda request: httpx.Response(404), "rendered_page"),
    )
    with pytest.raises(FetchError) as exc_info:
        asyncio.run(provider.fetch(CODE))
    assert exc_info.value.upstream_miss is False


# ── Tracking API provider (in-process aiohttp server) ────


def _fetch_from(handler, code: str = CODE):
    async def run():
        app = web.Application()
        app.router.add_get("/api/shopee-tracker/{code}", handler)
        async with test_utils.TestServer(app) as server:
            provider = TrackingApiProvider(
                str(server.make_url("/api/shopee-tracker")), "test-agent", 5,
            )
            try:
                return await provider.fetch(code)
            finally:
                await provider.close()

    return asyncio.run(run())


def test_tracking_api_success() -> None:
    async def handler(request: web.Request) -> web.Response:
        assert request.match_info["code"] == CODE
        return web.json_response({
            "success": True,
            "tracking": {
                "status": "Objeto entregue ao destinatário",
                "events": [
                    {"date": "01/05/2024", "time": "12:00", "description": "Entregue",
                     "timestamp": 1714564800},
                    {"date": "30/04/2024", "time": "08:15", "description": "Saiu para entrega"},
                ],
            },
        })

    snapshot = _fetch_from(handler)

    assert snapshot.canonical_status is CanonicalStatus.DELIVERED
    assert snapshot.provider == "tracking_api"
    assert snapshot.events[0].timestamp == datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    assert snapshot.events[1].raw_time == "30/04/2024 08:15"
    assert snapshot.events[1].timestamp == datetime(2024, 4, 30, 8, 15)


def test_tracking_api_missing_status_defaults_to_processing() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"success": True, "tracking": {"events": []}})

    snapshot = _fetch_from(handler)
    assert snapshot.canonical_status is CanonicalStatus.PROCESSING
    assert snapshot.events == ()


def test_tracking_api_reported_failure() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.json_response({"success": False, "error": "Código não encontrado"})

    with pytest.raises(FetchError, match="Código não encontrado") as exc_info:
        _fetch_from(handler)
    assert exc_info.value.upstream_miss is True


@pytest.mark.parametrize(("status", "miss"), [(404, True), (500, False)])
def test_tracking_api_http_errors(status, miss) -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(status=status)

    with pytest.raises(FetchError) as exc_info:
        _fetch_from(handler)
    assert exc_info.value.upstream_miss is miss


def test_tracking_api_malformed_json() -> None:
    async def handler(request: web.Request) -> web.Response:
        return web.Response(text="<html>oops</html>", content_type="text/html")

    with pytest.raises(FetchError, match="malformed") as exc_info:
        _fetch_from(handler)
    assert exc_info.value.upstream_miss is False
