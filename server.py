"""Lightweight aiohttp server -- the HTTP API over MarketDataService.

Routes return JSON built from the frozen snapshot models. The stream route
is Server-Sent Events: one `snapshot` event per publication.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from aiohttp import web

from core.errors import AggregationError
from core.models.market import Snapshot

if TYPE_CHECKING:
    from core.config import AppConfig
    from engine.service import MarketDataService

logger = logging.getLogger(__name__)


def create_app(config: AppConfig | None, service: MarketDataService) -> web.Application:
    """Create and configure the aiohttp application."""
    app = web.Application()

    # Store references for route handlers
    app["config"] = config
    app["service"] = service

    # Register routes
    app.router.add_get("/health", handle_health)
    app.router.add_get("/market", handle_get_market)
    app.router.add_get("/market/sentiment", handle_get_sentiment)
    app.router.add_get("/market/session", handle_get_session)
    app.router.add_post("/market/refresh", handle_refresh)
    app.router.add_get("/market/stream", handle_stream)

    return app


def snapshot_payload(snapshot: Snapshot, service: MarketDataService) -> dict:
    """Snapshot JSON plus the OPEN/CLOSED flag the dashboard expects."""
    payload = snapshot.model_dump(mode="json")
    payload["market_state"] = "OPEN" if service.is_market_open() else "CLOSED"
    payload["connection_status"] = service.connection_status
    return payload


# ---------------------------------------------------------------------------
# Route handlers
# ---------------------------------------------------------------------------

async def handle_health(request: web.Request) -> web.Response:
    """GET /health -- health check."""
    service: MarketDataService = request.app["service"]
    return web.json_response({
        "status": "ok",
        "connection_status": service.connection_status,
        "subscribers": service.subscriber_count,
        "cache": service.cache_info(),
    })


async def handle_get_market(request: web.Request) -> web.Response:
    """GET /market -- latest snapshot; runs a cycle if none exists yet."""
    service: MarketDataService = request.app["service"]
    snapshot = service.latest
    if snapshot is None:
        try:
            snapshot = await service.force_refresh()
        except AggregationError as e:
            logger.error("Market snapshot unavailable: %s", e)
            return web.json_response(
                {"error": "Market data unavailable", "detail": str(e)}, status=503,
            )
    return web.json_response(snapshot_payload(snapshot, service))


async def handle_get_sentiment(request: web.Request) -> web.Response:
    """GET /market/sentiment"""
    service: MarketDataService = request.app["service"]
    return web.json_response(service.get_sentiment().model_dump(mode="json"))


async def handle_get_session(request: web.Request) -> web.Response:
    """GET /market/session -- exchange session state and next transition."""
    service: MarketDataService = request.app["service"]
    info = service.market_session()
    info["timestamp"] = datetime.now(timezone.utc).isoformat()
    return web.json_response(info)


async def handle_refresh(request: web.Request) -> web.Response:
    """POST /market/refresh -- force an out-of-band cycle."""
    service: MarketDataService = request.app["service"]
    try:
        snapshot = await service.force_refresh()
    except AggregationError as e:
        logger.error("Forced refresh failed: %s", e)
        return web.json_response({"error": "Refresh failed", "detail": str(e)}, status=503)
    return web.json_response(snapshot_payload(snapshot, service))


async def handle_stream(request: web.Request) -> web.StreamResponse:
    """GET /market/stream -- Server-Sent Events stream of snapshots.

    Subscribes for the lifetime of the connection.
    """
    service: MarketDataService = request.app["service"]

    response = web.StreamResponse(
        status=200,
        reason="OK",
        headers={
            "Content-Type": "text/event-stream",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )
    await response.prepare(request)

    queue: asyncio.Queue[Snapshot] = asyncio.Queue()
    unsubscribe = service.subscribe(queue.put_nowait)

    try:
        while True:
            snapshot = await queue.get()
            data = snapshot.model_dump_json()
            await response.write(f"event: snapshot\ndata: {data}\n\n".encode())
    except (asyncio.CancelledError, ConnectionResetError):
        pass
    finally:
        unsubscribe()

    return response
