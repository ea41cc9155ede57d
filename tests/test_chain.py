from __future__ import annotations

import asyncio

import pytest

from src.config import ProvidersConfig
from src.providers.chain import ProviderChain, build_provider_chain
from src.tracking.errors import FetchError
from src.tracking.models import CanonicalStatus
from tests.fakes import CODE, ScriptedProvider, snap


class ExplodingProvider:
    name = "exploding"

    def __init__(self) -> None:
        self.calls = 0

    async def fetch(self, code):
        self.calls += 1
        raise KeyError("bad payload")


def test_primary_success_skips_fallback() -> None:
    primary, fallback = ScriptedProvider("primary"), ScriptedProvider("fallback")
    primary.queue(CODE, snap(CanonicalStatus.POSTED, provider="primary"))
    chain = ProviderChain([primary, fallback])

    snapshot = asyncio.run(chain.fetch(CODE))
    assert snapshot.provider == "primary"
    assert fallback.calls == []


def test_fallback_used_when_primary_fails() -> None:
    primary, fallback = ScriptedProvider("primary"), ScriptedProvider("fallback")
    primary.queue(CODE, FetchError("primary", CODE, "HTTP 500"))
    fallback.queue(CODE, snap(CanonicalStatus.IN_TRANSIT, provider="fallback"))
    chain = ProviderChain([primary, fallback])

    snapshot = asyncio.run(chain.fetch(CODE))
    assert snapshot.provider == "fallback"
    assert snapshot.canonical_status is CanonicalStatus.IN_TRANSIT


def test_unexpected_exception_moves_to_next_provider() -> None:
    fallback = ScriptedProvider("fallback")
    fallback.queue(CODE, snap(CanonicalStatus.POSTED))
    chain = ProviderChain([ExplodingProvider(), fallback])

    assert asyncio.run(chain.fetch(CODE)).canonical_status is CanonicalStatus.POSTED


def test_slow_provider_counts_as_failure() -> None:
    slow, fallback = ScriptedProvider("slow"), ScriptedProvider("fallback")
    slow.delay = 1.0
    slow.queue(CODE, snap(CanonicalStatus.DELIVERED, provider="slow"))
    fallback.queue(CODE, snap(CanonicalStatus.POSTED, provider="fallback"))
    chain = ProviderChain([slow, fallback], timeout_seconds=0.05)

    snapshot = asyncio.run(chain.fetch(CODE))
    assert snapshot.provider == "fallback"
    assert chain.circuit_breakers[0].failure_count == 1


def test_all_providers_failing_raises_chain_error() -> None:
    primary, fallback = ScriptedProvider("primary"), ScriptedProvider("fallback")
    chain = ProviderChain([primary, fallback])

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(chain.fetch(CODE))
    assert exc_info.value.provider == "chain"
    assert "primary" in exc_info.value.reason
    assert "fallback" in exc_info.value.reason


def test_open_circuit_skips_provider() -> None:
    exploding = ExplodingProvider()
    fallback = ScriptedProvider("fallback")
    fallback.queue(CODE, snap(CanonicalStatus.POSTED))
    chain = ProviderChain([exploding, fallback], failure_threshold=2)

    for _ in range(4):
        asyncio.run(chain.fetch(CODE))

    assert exploding.calls == 2
    assert len(fallback.calls) == 4
    assert chain.health()[0]["state"] == "OPEN"


def test_unknown_code_does_not_count_against_breaker() -> None:
    primary, fallback = ScriptedProvider("primary"), ScriptedProvider("fallback")
    chain = ProviderChain([primary, fallback], failure_threshold=2)
    for code in ("XX000000001XX", "XX000000002XX", "XX000000003XX"):
        primary.queue(code, FetchError("primary", code, "not found upstream", upstream_miss=True))
        fallback.queue(code, FetchError("fallback", code, "no tracking events on page", upstream_miss=True))

    async def run():
        for code in ("XX000000001XX", "XX000000002XX", "XX000000003XX"):
            with pytest.raises(FetchError) as exc_info:
                await chain.fetch(code)
            assert exc_info.value.upstream_miss is True

    asyncio.run(run())
    assert [b["state"] for b in chain.health()] == ["CLOSED", "CLOSED"]
    assert [b["failure_count"] for b in chain.health()] == [0, 0]


def test_miss_and_outage_together_is_not_a_miss() -> None:
    primary, fallback = ScriptedProvider("primary"), ScriptedProvider("fallback")
    primary.queue(CODE, FetchError("primary", CODE, "HTTP 503"))
    fallback.queue(CODE, FetchError("fallback", CODE, "no tracking events on page", upstream_miss=True))
    chain = ProviderChain([primary, fallback])

    with pytest.raises(FetchError) as exc_info:
        asyncio.run(chain.fetch(CODE))
    assert exc_info.value.upstream_miss is False
    assert chain.circuit_breakers[0].failure_count == 1
    assert chain.circuit_breakers[1].failure_count == 0


def test_empty_chain_rejected() -> None:
    with pytest.raises(ValueError):
        ProviderChain([])


def _providers_config(**overrides) -> ProvidersConfig:
    values = dict(
        order=["tracking_api", "spx_page", "rendered_page"],
        timeout_seconds=15,
        user_agent="test-agent",
        failure_threshold=5,
        cooldown_seconds=300,
        tracking_api_url="https://api.example/track",
        spx_page_url="https://spx.example/track",
        spx_min_interval_seconds=0,
        render_url="",
    )
    values.update(overrides)
    return ProvidersConfig(**values)


def test_build_chain_follows_configured_order() -> None:
    chain = build_provider_chain(_providers_config(order=["spx_page", "tracking_api"]))
    assert [p.name for p in chain.providers] == ["spx_page", "tracking_api"]


def test_build_chain_skips_render_provider_without_url() -> None:
    chain = build_provider_chain(_providers_config())
    assert [p.name for p in chain.providers] == ["tracking_api", "spx_page"]

    chain = build_provider_chain(_providers_config(render_url="https://render.example/api"))
    assert [p.name for p in chain.providers] == ["tracking_api", "spx_page", "rendered_page"]
