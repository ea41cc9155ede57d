from __future__ import annotations

import asyncio

from aiohttp import test_utils

from src.api.server import create_app
from src.providers.chain import ProviderChain
from src.tracking.engine import ReconciliationEngine
from src.tracking.errors import FetchError
from src.tracking.models import CanonicalStatus
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from tests.fakes import CODE, MemoryStore, RecordingNotifier, ScriptedProvider, snap


def _call(scenario, provider: ScriptedProvider | None = None):
    """Run `scenario(client, registry, store)` against a fresh app."""
    provider = provider or ScriptedProvider()
    chain = ProviderChain([provider])
    store = MemoryStore()
    registry = SubscriptionRegistry(store, fetcher=chain)
    health = HealthMonitor()
    engine = ReconciliationEngine(registry, chain, RecordingNotifier(), health=health)
    app = create_app(registry, engine, health)

    async def run():
        async with test_utils.TestClient(test_utils.TestServer(app)) as client:
            return await scenario(client, registry, store)

    return asyncio.run(run())


def test_subscribe_creates_record() -> None:
    provider = ScriptedProvider()
    provider.queue(CODE, snap(CanonicalStatus.POSTED))

    async def scenario(client, registry, store):
        resp = await client.post("/track", json={"tracking_code": CODE, "user_id": "u1"})
        return resp.status, await resp.json(), store.saved

    status, body, saved = _call(scenario, provider)
    assert status == 201
    assert body["success"] is True
    assert body["already_subscribed"] is False
    assert body["subscription"]["last_status"] == "posted"
    assert saved[CODE].subscribers == {"u1"}


def test_subscribe_twice_reports_already_subscribed() -> None:
    async def scenario(client, registry, store):
        await client.post("/track", json={"tracking_code": CODE, "user_id": "u1"})
        resp = await client.post("/track", json={"tracking_code": CODE, "user_id": "u1"})
        return resp.status, await resp.json()

    status, body = _call(scenario)
    assert status == 200
    assert body["already_subscribed"] is True
    assert body["subscription"]["subscribers"] == ["u1"]


def test_subscribe_rejects_invalid_code_and_missing_fields() -> None:
    async def scenario(client, registry, store):
        statuses = []
        for payload in (
            {"tracking_code": "short", "user_id": "u1"},
            {"tracking_code": CODE},
            {"user_id": "u1"},
        ):
            resp = await client.post("/track", json=payload)
            statuses.append(resp.status)
        resp = await client.post("/track", data="not json")
        statuses.append(resp.status)
        return statuses, store.save_count

    statuses, saves = _call(scenario)
    assert statuses == [400, 400, 400, 400]
    assert saves == 0


def test_unsubscribe() -> None:
    async def scenario(client, registry, store):
        await client.post("/track", json={"tracking_code": CODE, "user_id": "u1"})
        missing_user = await client.delete(f"/track/{CODE}", json={})
        found = await client.delete(f"/track/{CODE}", json={"user_id": "u1"})
        again = await client.delete(f"/track/{CODE}", json={"user_id": "u1"})
        return missing_user.status, await found.json(), await again.json()

    missing_status, found, again = _call(scenario)
    assert missing_status == 400
    assert found == {"success": True, "found": True}
    assert again == {"success": True, "found": False}


def test_live_lookup() -> None:
    provider = ScriptedProvider()
    provider.queue(CODE, snap(CanonicalStatus.IN_TRANSIT))

    async def scenario(client, registry, store):
        ok = await client.get(f"/track/{CODE}")
        invalid = await client.get("/track/short")
        return ok.status, await ok.json(), invalid.status, await registry.all_records()

    status, body, invalid_status, records = _call(scenario, provider)
    assert status == 200
    assert body["tracking_code"] == CODE
    assert body["status"] == "in_transit"
    assert invalid_status == 400
    assert records == {}


def test_live_lookup_all_providers_failed() -> None:
    provider = ScriptedProvider()
    provider.queue(CODE, FetchError("fake", CODE, "down"))

    async def scenario(client, registry, store):
        resp = await client.get(f"/track/{CODE}")
        return resp.status, await resp.json()

    status, body = _call(scenario, provider)
    assert status == 502
    assert body["success"] is False


def test_subscription_queries() -> None:
    other = "LP00012345678CN"

    async def scenario(client, registry, store):
        await client.post("/track", json={"tracking_code": CODE, "user_id": "u1"})
        await client.post("/track", json={"tracking_code": other, "user_id": "u2"})
        everything = await (await client.get("/subscriptions")).json()
        mine = await (await client.get("/users/u1/subscriptions")).json()
        one = await client.get(f"/subscriptions/{CODE}")
        missing = await client.get("/subscriptions/NOPE0000000000")
        return everything, mine, one.status, await one.json(), missing.status

    everything, mine, one_status, one, missing_status = _call(scenario)
    assert everything["count"] == 2
    assert set(everything["subscriptions"]) == {CODE, other}
    assert [s["tracking_code"] for s in mine["subscriptions"]] == [CODE]
    assert one_status == 200
    assert one["subscription"]["subscribers"] == ["u1"]
    assert missing_status == 404


def test_health_endpoint() -> None:
    async def scenario(client, registry, store):
        resp = await client.get("/health")
        return resp.status, await resp.json()

    status, body = _call(scenario)
    assert status == 200
    assert body["health"]["total_cycles"] == 0
    assert body["providers"][0]["state"] == "CLOSED"
