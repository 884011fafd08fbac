#!/usr/bin/env python3
"""
HTTP adapters for the acquisition core.

A small aiohttp.web application exposing the same-origin feed proxy, feed
validation, a manual fetch trigger and favicon backfill. Handlers only
translate between HTTP and the core; all behaviour lives in the modules they
call.
"""

from asyncio import create_task, CancelledError
from typing import Optional

from aiohttp import web

from config import config, get_logger
from errors import StorageError, TransportError
from fetcher import FeedFetcher
from validation import FeedValidator

logger = get_logger("server")

FETCHER_KEY = web.AppKey("fetcher", FeedFetcher)
VALIDATOR_KEY = web.AppKey("validator", FeedValidator)

XML_CONTENT_TYPE = "application/xml"


async def proxy_handler(request: web.Request) -> web.Response:
    """GET /api/proxy?url=...: fetch server side and relay the raw body."""
    url = request.query.get("url")
    if not url:
        return web.json_response({"error": "Missing url parameter"}, status=400)

    transport = request.app[FETCHER_KEY].transport
    logger.info(f"Proxy request for {url}")
    try:
        fetched = await transport.fetch_server_side(url)
    except TransportError as e:
        logger.warning(f"Proxy fetch failed for {url}: {e}")
        return web.json_response({"error": "Failed to fetch feed content", "details": str(e)}, status=500)

    return web.Response(
        text=fetched.content,
        content_type=XML_CONTENT_TYPE,
        charset="utf-8",
        headers={"Access-Control-Allow-Origin": "*"},
    )


async def validate_handler(request: web.Request) -> web.Response:
    """POST /api/sources/validate-rss with {"url": ..., "autoDiscover": bool}."""
    try:
        body = await request.json()
    except ValueError:
        return web.json_response({"valid": False, "error": "Request body must be JSON"}, status=400)
    if not isinstance(body, dict) or not body.get("url"):
        return web.json_response({"valid": False, "error": "Please provide a feed URL"}, status=400)

    auto_discover = body.get("autoDiscover", True)
    if not isinstance(auto_discover, bool):
        return web.json_response({"valid": False, "error": "autoDiscover must be true or false"}, status=400)

    validator = request.app[VALIDATOR_KEY]
    result = await validator.validate(str(body["url"]), auto_discover=auto_discover)
    return web.json_response(result.to_dict(), status=200 if result.valid else 400)


async def fetch_handler(request: web.Request) -> web.Response:
    """POST /api/fetch: run one fetch over every enabled source."""
    fetcher = request.app[FETCHER_KEY]
    try:
        summary = await fetcher.fetch_all_sources()
    except StorageError as e:
        logger.error(f"Fetch request failed: {e}")
        return web.json_response({"success": False, "error": "Failed to fetch sources"}, status=500)
    return web.json_response({"success": True, **summary.to_dict()})


async def update_favicons_handler(request: web.Request) -> web.Response:
    """POST /api/sources/update-favicons: backfill favicons for RSS sources."""
    fetcher = request.app[FETCHER_KEY]
    try:
        updated = await fetcher.update_missing_favicons()
    except StorageError as e:
        logger.error(f"Favicon update failed: {e}")
        return web.json_response({"success": False, "error": str(e)}, status=500)
    return web.json_response({"success": True, "updated": updated})


async def _background_fetch(app: web.Application):
    """cleanup_ctx running the periodic fetch loop for the app's lifetime."""
    task = create_task(app[FETCHER_KEY].run_forever(config.FETCH_INTERVAL_MINUTES))
    yield
    task.cancel()
    try:
        await task
    except CancelledError:
        pass


def create_app(fetcher: FeedFetcher, validator: Optional[FeedValidator] = None,
               background_fetch: bool = False) -> web.Application:
    """Build the application around an initialized FeedFetcher."""
    app = web.Application()
    app[FETCHER_KEY] = fetcher
    app[VALIDATOR_KEY] = validator or FeedValidator(fetcher.transport)

    app.router.add_get("/api/proxy", proxy_handler)
    app.router.add_post("/api/sources/validate-rss", validate_handler)
    app.router.add_post("/api/fetch", fetch_handler)
    app.router.add_post("/api/sources/update-favicons", update_favicons_handler)

    if background_fetch:
        app.cleanup_ctx.append(_background_fetch)
    return app
