"""
HTTP read API for the polls projection.

This module exposes the projection's read queries as JSON so the page
layer (and operators) can read poll results without opening the
database file themselves:
- Poll by URI, with per-option tallies
- Votes on a poll
- An author's vote on a poll
- Health and row counts

Record URIs contain slashes, so they are passed as query parameters
rather than path segments.

Invariants:
    - Read-only; nothing here mutates the projection
    - Responses reflect the projection, which may lag the relay

How to change safely:
    - Add fields to responses, don't rename them
    - Version the API if breaking changes are needed
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Any

from aiohttp import web

from ..apply.projection_store import ProjectionStore, ProjectionStoreError
from ..config import HttpConfig

logger = logging.getLogger(__name__)

STORE_KEY = web.AppKey("store", ProjectionStore)
STATS_KEY = web.AppKey("consumer_stats", Callable[[], dict[str, Any]])


def create_http_app(
    store: ProjectionStore,
    consumer_stats: Callable[[], dict[str, Any]] | None = None,
) -> web.Application:
    """Create the HTTP application.

    Args:
        store: Projection store to read from
        consumer_stats: Returns the stream consumer's stats for /v1/health

    Returns:
        aiohttp Application instance
    """
    app = web.Application(middlewares=[error_middleware])
    app[STORE_KEY] = store
    app[STATS_KEY] = consumer_stats or (lambda: {})

    app.router.add_get("/v1/health", handle_health)
    app.router.add_get("/v1/poll", handle_get_poll)
    app.router.add_get("/v1/votes", handle_get_votes)
    app.router.add_get("/v1/vote", handle_get_vote)

    return app


@web.middleware
async def error_middleware(request: web.Request, handler: Callable) -> web.StreamResponse:
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except ProjectionStoreError as e:
        logger.error(f"Projection read failed: {e}", extra={"path": request.path})
        return web.json_response(
            {"error": "Projection unavailable", "error_code": "STORE_UNAVAILABLE"},
            status=503,
        )


def _required_query(request: web.Request, name: str) -> str:
    value = request.query.get(name)
    if not value:
        raise web.HTTPBadRequest(
            text=json.dumps({"error": f"{name} query parameter is required"}),
            content_type="application/json",
        )
    return value


def _not_found(message: str) -> web.HTTPNotFound:
    return web.HTTPNotFound(
        text=json.dumps({"error": message}),
        content_type="application/json",
    )


async def handle_health(request: web.Request) -> web.Response:
    """Handle GET /v1/health - Row counts and consumer state."""
    counts = await request.app[STORE_KEY].get_stats()
    consumer = request.app[STATS_KEY]()
    healthy = bool(consumer.get("running", True))
    status = 200 if healthy else 503
    return web.json_response(
        {"healthy": healthy, "projection": counts, "consumer": consumer}, status=status
    )


async def handle_get_poll(request: web.Request) -> web.Response:
    """Handle GET /v1/poll?uri= - Poll with results."""
    uri = _required_query(request, "uri")

    results = await request.app[STORE_KEY].get_poll_results(uri)
    if results is None:
        raise _not_found(f"Poll not found: {uri}")

    return web.json_response(
        {
            "poll": asdict(results.poll),
            "counts": results.counts,
            "total": results.total,
        }
    )


async def handle_get_votes(request: web.Request) -> web.Response:
    """Handle GET /v1/votes?poll= - Votes on a poll."""
    poll_uri = _required_query(request, "poll")
    votes = await request.app[STORE_KEY].get_votes_for_poll(poll_uri)
    return web.json_response({"votes": [asdict(v) for v in votes]})


async def handle_get_vote(request: web.Request) -> web.Response:
    """Handle GET /v1/vote?author=&poll= - An author's vote on a poll."""
    author = _required_query(request, "author")
    poll_uri = _required_query(request, "poll")

    vote = await request.app[STORE_KEY].get_vote(author, poll_uri)
    if vote is None:
        raise _not_found(f"No vote by {author} on {poll_uri}")

    return web.json_response({"vote": asdict(vote)})


async def run_http_server(
    store: ProjectionStore,
    config: HttpConfig,
    consumer_stats: Callable[[], dict[str, Any]] | None = None,
) -> None:
    """Run the HTTP server until cancelled.

    Args:
        store: Projection store to read from
        config: Bind address
        consumer_stats: Returns the stream consumer's stats
    """
    app = create_http_app(store, consumer_stats)

    runner = web.AppRunner(app)
    await runner.setup()

    site = web.TCPSite(runner, config.host, config.port)
    await site.start()

    logger.info(f"HTTP server running on http://{config.host}:{config.port}")

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        await runner.cleanup()
