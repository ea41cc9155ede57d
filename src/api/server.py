"""Parcel Tracker — HTTP API.

aiohttp.web adapter over the registry and the engine:

  GET    /track/{code}                  live lookup (no subscription)
  POST   /track                         {tracking_code, user_id} → subscribe
  DELETE /track/{code}                  {user_id} → unsubscribe
  GET    /subscriptions                 full registry dump
  GET    /subscriptions/{code}          one record (404 when absent)
  GET    /users/{user_id}/subscriptions codes a user tracks
  GET    /health                        health monitor + circuit breakers

Every response is JSON with a `success` flag. InvalidCode and missing
fields map to 400; a live lookup where every provider failed maps to 502.
"""

from __future__ import annotations

from typing import Any, Optional

from aiohttp import web

from src.tracking.engine import ReconciliationEngine
from src.tracking.errors import FetchError, InvalidCode, SubscriptionNotFound
from src.tracking.registry import SubscriptionRegistry
from src.utils.health import HealthMonitor
from src.utils.logger import get_logger

logger = get_logger(__name__)

REGISTRY_KEY = web.AppKey("registry", SubscriptionRegistry)
ENGINE_KEY = web.AppKey("engine", ReconciliationEngine)
HEALTH_KEY = web.AppKey("health", HealthMonitor)


def _error(status: int, message: str) -> web.Response:
    return web.json_response({"success": False, "error": message}, status=status)


async def _json_body(request: web.Request) -> dict[str, Any]:
    """Parse the request body; a missing or malformed body reads as {}."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def _text_field(body: dict[str, Any], name: str) -> Optional[str]:
    value = body.get(name)
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


# ═══════════════════════════════════════════════════════════
# Handlers
# ═══════════════════════════════════════════════════════════


async def lookup_handler(request: web.Request) -> web.Response:
    """GET /track/{code}: live lookup. 400 on an invalid code, 502 when every provider failed."""
    code = request.match_info["code"]
    try:
        snapshot = await request.app[ENGINE_KEY].lookup(code)
    except InvalidCode as e:
        return _error(400, str(e))
    except FetchError as e:
        logger.warning("Live lookup for %s failed: %s", code, e)
        return _error(502, f"Could not fetch tracking data: {e.reason}")

    return web.json_response({"success": True, **snapshot.to_dict()})


async def subscribe_handler(request: web.Request) -> web.Response:
    """POST /track: subscribe a user. 201 when new, 200 when already subscribed."""
    body = await _json_body(request)
    code = _text_field(body, "tracking_code")
    user_id = _text_field(body, "user_id")
    if code is None or user_id is None:
        return _error(400, "tracking_code and user_id are required")

    try:
        result = await request.app[REGISTRY_KEY].subscribe(code, user_id)
    except InvalidCode as e:
        return _error(400, str(e))

    status = 200 if result.already_subscribed else 201
    return web.json_response(
        {
            "success": True,
            "already_subscribed": result.already_subscribed,
            "subscription": {"tracking_code": code, **result.record.to_dict()},
        },
        status=status,
    )


async def unsubscribe_handler(request: web.Request) -> web.Response:
    """DELETE /track/{code}: unsubscribe the `user_id` given in the body."""
    code = request.match_info["code"]
    body = await _json_body(request)
    user_id = _text_field(body, "user_id")
    if user_id is None:
        return _error(400, "user_id is required")

    result = await request.app[REGISTRY_KEY].unsubscribe(code, user_id)
    return web.json_response({"success": True, "found": result.found})


async def list_subscriptions_handler(request: web.Request) -> web.Response:
    """GET /subscriptions: dump of every record."""
    records = await request.app[REGISTRY_KEY].all_records()
    return web.json_response({
        "success": True,
        "count": len(records),
        "subscriptions": {code: record.to_dict() for code, record in records.items()},
    })


async def get_subscription_handler(request: web.Request) -> web.Response:
    """GET /subscriptions/{code}: one record, 404 when nobody tracks it."""
    code = request.match_info["code"]
    try:
        record = await request.app[REGISTRY_KEY].get_subscription(code)
    except SubscriptionNotFound as e:
        return _error(404, str(e))
    return web.json_response({
        "success": True,
        "subscription": {"tracking_code": code, **record.to_dict()},
    })


async def user_subscriptions_handler(request: web.Request) -> web.Response:
    """GET /users/{user_id}/subscriptions: codes one user tracks."""
    user_id = request.match_info["user_id"]
    summaries = await request.app[REGISTRY_KEY].list_for_user(user_id)
    return web.json_response({
        "success": True,
        "user_id": user_id,
        "subscriptions": [summary.to_dict() for summary in summaries],
    })


async def health_handler(request: web.Request) -> web.Response:
    """GET /health: poll metrics, engine state and provider circuit breakers."""
    engine = request.app[ENGINE_KEY]
    breakers = getattr(engine.fetcher, "circuit_breakers", [])
    return web.json_response({
        "success": True,
        "running": engine.is_running,
        "cycle_count": engine.cycle_count,
        "last_cycle_time": engine.last_cycle_time,
        "health": request.app[HEALTH_KEY].get_status(),
        "recent_errors": request.app[HEALTH_KEY].recent_errors(),
        "providers": [breaker.to_dict() for breaker in breakers],
    })


# ═══════════════════════════════════════════════════════════
# Application factory
# ═══════════════════════════════════════════════════════════


def create_app(
    registry: SubscriptionRegistry,
    engine: ReconciliationEngine,
    health: HealthMonitor,
) -> web.Application:
    """Build the aiohttp application with all routes registered."""
    app = web.Application()
    app[REGISTRY_KEY] = registry
    app[ENGINE_KEY] = engine
    app[HEALTH_KEY] = health

    app.router.add_get("/track/{code}", lookup_handler)
    app.router.add_post("/track", subscribe_handler)
    app.router.add_delete("/track/{code}", unsubscribe_handler)
    app.router.add_get("/subscriptions", list_subscriptions_handler)
    app.router.add_get("/subscriptions/{code}", get_subscription_handler)
    app.router.add_get("/users/{user_id}/subscriptions", user_subscriptions_handler)
    app.router.add_get("/health", health_handler)
    return app
