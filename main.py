#!/usr/bin/env python3
"""
InfoDash acquisition orchestrator.

Command-line entry point for the acquisition core:

    init             create the schema and seed the default sources
    status           show source and item counts
    validate URL     check whether a URL (or its site) offers a usable feed
    fetch            fetch every enabled source once (or forever with --loop)
    serve            run the HTTP adapters with the periodic fetch loop
    update-favicons  resolve favicons for RSS sources lacking one
"""

import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Optional
import argparse

from aiohttp import web

from config import config, get_logger
from errors import SchedulerError
from fetcher import FeedFetcher
from models import DatabaseQueue
from server import create_app
from telemetry import init_telemetry, trace_span
from validation import FeedValidator

logger = get_logger("orchestrator")
init_telemetry("infodash-orchestrator")


class Orchestrator:
    """Runs one CLI mode against a freshly initialized FeedFetcher."""

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path or config.DATABASE_PATH

    async def _open(self) -> FeedFetcher:
        fetcher = FeedFetcher(db=DatabaseQueue(self.db_path))
        await fetcher.initialize()
        return fetcher

    async def _shutdown(self, fetcher: FeedFetcher) -> None:
        await fetcher.close()
        await fetcher.db.stop()

    async def init(self) -> int:
        fetcher = await self._open()
        try:
            created = await fetcher.db.execute('seed_default_sources')
            logger.info(f"✅ Database ready at {self.db_path}; {created} default sources seeded")
            return created
        finally:
            await self._shutdown(fetcher)

    async def status(self) -> dict:
        fetcher = await self._open()
        try:
            sources = await fetcher.db.execute('list_sources')
            return {
                'timestamp': datetime.now(timezone.utc).isoformat(),
                'database': self.db_path,
                'sources': len(sources),
                'enabled_sources': sum(1 for s in sources if s.enabled),
                'items': await fetcher.db.execute('count_items'),
            }
        finally:
            await self._shutdown(fetcher)

    @trace_span("validate", tracer_name="orchestrator",
                attr_from_args=lambda self, url, auto_discover=True: {"validation.input": url})
    async def validate(self, url: str, auto_discover: bool = True) -> dict:
        fetcher = await self._open()
        try:
            result = await FeedValidator(fetcher.transport).validate(url, auto_discover=auto_discover)
            return result.to_dict()
        finally:
            await self._shutdown(fetcher)

    @trace_span("fetch", tracer_name="orchestrator")
    async def fetch(self, loop: bool = False) -> bool:
        fetcher = await self._open()
        try:
            if loop:
                await fetcher.run_forever()
                return True
            summary = await fetcher.scheduled_fetch()
            logger.info(f"✅ Fetch finished: {summary.to_dict()}")
            return True
        except SchedulerError as e:
            logger.error(f"❌ {e}")
            return False
        finally:
            await self._shutdown(fetcher)

    async def update_favicons(self) -> int:
        fetcher = await self._open()
        try:
            return await fetcher.update_missing_favicons()
        finally:
            await self._shutdown(fetcher)

    async def serve(self, host: str, port: int) -> None:
        fetcher = await self._open()
        runner = web.AppRunner(create_app(fetcher, background_fetch=True))
        await runner.setup()
        try:
            site = web.TCPSite(runner, host, port)
            await site.start()
            logger.info(f"🌐 Serving on http://{host}:{port}")
            while True:
                await asyncio.sleep(3600)
        finally:
            await runner.cleanup()
            await self._shutdown(fetcher)


def print_status(status: dict) -> None:
    print("\n📊 InfoDash status")
    print(f"⏰ {status['timestamp']}")
    print(f"💾 Database: {status['database']}")
    print(f"   📡 Sources: {status['sources']} ({status['enabled_sources']} enabled)")
    print(f"   📰 Items: {status['items']}")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='InfoDash feed acquisition')
    parser.add_argument('mode', choices=['init', 'status', 'validate', 'fetch', 'serve', 'update-favicons'],
                        help='Operation mode')
    parser.add_argument('url', nargs='?', help='URL to validate (validate mode)')
    parser.add_argument('--no-discover', action='store_true',
                        help='Validate the URL as given, without probing common feed paths')
    parser.add_argument('--loop', action='store_true',
                        help='Keep fetching every FETCH_INTERVAL_MINUTES')
    parser.add_argument('--host', default=config.SERVER_HOST, help='Bind address for serve mode')
    parser.add_argument('--port', type=int, default=config.SERVER_PORT, help='Port for serve mode')
    parser.add_argument('--db', type=str, help='Database path (defaults to DATABASE_PATH)')

    args = parser.parse_args()
    orchestrator = Orchestrator(args.db)

    try:
        if args.mode == 'init':
            asyncio.run(orchestrator.init())

        elif args.mode == 'status':
            print_status(asyncio.run(orchestrator.status()))

        elif args.mode == 'validate':
            if not args.url:
                parser.error("validate requires a URL")
            result = asyncio.run(orchestrator.validate(args.url, auto_discover=not args.no_discover))
            print(json.dumps(result, ensure_ascii=False, indent=2))
            sys.exit(0 if result['valid'] else 1)

        elif args.mode == 'fetch':
            success = asyncio.run(orchestrator.fetch(loop=args.loop))
            sys.exit(0 if success else 1)

        elif args.mode == 'serve':
            asyncio.run(orchestrator.serve(args.host, args.port))

        elif args.mode == 'update-favicons':
            updated = asyncio.run(orchestrator.update_favicons())
            logger.info(f"✅ Updated {updated} favicons")

    except KeyboardInterrupt:
        logger.info("👋 Orchestrator shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
