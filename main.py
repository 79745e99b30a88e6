#!/usr/bin/env python3
"""
Command line entry point: start a crawl, resume an interrupted one, or check
that the configured services are reachable.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

import redis.asyncio as redis
import yaml
from redis.exceptions import RedisError

from stepcrawl import __version__
from stepcrawl.crawler.models import CrawlInput, CrawlInputError
from stepcrawl.crawler.scheduler import ExecutionEngine
from stepcrawl.storage.blob_store import create_blob_store
from stepcrawl.utils.config import Config, load_config
from stepcrawl.utils.logger import setup_logging


logger = logging.getLogger(__name__)


class CrawlerApp:
    """Runs one crawl in the foreground until it completes or a signal arrives."""

    def __init__(self, config: Config):
        self.config = config
        self.engine: Optional[ExecutionEngine] = None
        self._stop_requested: Optional[asyncio.Event] = None

    def _install_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._request_stop, signum)
            except NotImplementedError:
                # Not available on every platform; Ctrl+C still raises KeyboardInterrupt
                pass

    def _request_stop(self, signum: int):
        logger.info(f"Received {signal.Signals(signum).name}, stopping after the current step")
        self._stop_requested.set()

    async def crawl(self, crawl_input: Optional[CrawlInput], resume_id: Optional[str]) -> int:
        # Bound to the loop asyncio.run created
        self._stop_requested = asyncio.Event()
        self._install_signal_handlers()
        try:
            async with ExecutionEngine(self.config) as engine:
                self.engine = engine
                if resume_id:
                    logger.info(f"Resuming crawl {resume_id}")
                    work = engine.resume(resume_id)
                else:
                    logger.info(f"Crawling {crawl_input.base_url} as '{crawl_input.crawl_name}'")
                    work = engine.run(crawl_input)
                return await self._run_until_stopped(work)
        except Exception as e:
            logger.error(f"Crawl failed: {e}", exc_info=True)
            return 1

    async def _run_until_stopped(self, work) -> int:
        crawl_task = asyncio.ensure_future(work)
        stop_task = asyncio.ensure_future(self._stop_requested.wait())
        await asyncio.wait([crawl_task, stop_task], return_when=asyncio.FIRST_COMPLETED)

        if crawl_task.done():
            stop_task.cancel()
            result = crawl_task.result()
            logger.info(f"Crawl {result.crawl_id} complete: {result.total_steps} pages "
                        f"in {result.executions} execution(s)")
            return 0

        crawl_task.cancel()
        try:
            await crawl_task
        except asyncio.CancelledError:
            pass
        if self.engine.active_crawl_id:
            logger.info(f"Stopped; continue later with --resume {self.engine.active_crawl_id}")
        return 130

    async def check(self) -> int:
        """Verify Redis and the data directory without crawling."""
        ok = True
        client = redis.Redis(host=self.config.redis.host, port=self.config.redis.port,
                             db=self.config.redis.db, password=self.config.redis.password)
        try:
            await client.ping()
            logger.info(f"Redis reachable at {self.config.redis.host}:{self.config.redis.port}")
        except RedisError as e:
            logger.error(f"Redis not reachable: {e}")
            ok = False
        finally:
            await client.aclose()

        store = create_blob_store(self.config.storage)
        try:
            await store.initialize()
            logger.info(f"Data directory ready: {self.config.storage.data_directory}")
        except Exception as e:
            logger.error(f"Data directory not usable: {e}")
            ok = False
        finally:
            await store.close()

        return 0 if ok else 1


def parse_keywords(raw: Optional[str]) -> Optional[List[str]]:
    """Comma separated keywords, None when no keyword is given."""
    if not raw:
        return None
    keywords = [keyword.strip() for keyword in raw.split(',') if keyword.strip()]
    return keywords or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stepcrawl",
        description="Crawl one website into markdown pages, in step-budgeted executions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  stepcrawl --base-url https://example.com --crawl-name example
  stepcrawl --base-url https://example.com/docs --crawl-name docs --keywords guide,api
  stepcrawl --resume 6f1c0d52-...          # carry on an interrupted crawl
  stepcrawl --dry-run                      # check Redis and the data directory
        """
    )
    parser.add_argument('--config', default='config.yaml', help="YAML configuration file (default: config.yaml)")
    parser.add_argument('--base-url', help="crawl this url and the urls below it")
    parser.add_argument('--crawl-name', help="name the stored pages are grouped under")
    parser.add_argument('--keywords', help="comma separated; only follow urls containing one of them")
    parser.add_argument('--resume', metavar='CRAWL_ID', help="resume an unfinished crawl")
    parser.add_argument('--dry-run', action='store_true', help="check the configured services and exit")
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    crawl_input = None
    if not args.dry_run and not args.resume:
        if not args.base_url or not args.crawl_name:
            parser.error("--base-url and --crawl-name are required unless --resume or --dry-run is given")
        crawl_input = CrawlInput(base_url=args.base_url, crawl_name=args.crawl_name,
                                 path_keywords=parse_keywords(args.keywords))
        try:
            crawl_input.validate()
        except CrawlInputError as e:
            parser.error(str(e))

    if not Path(args.config).exists():
        parser.error(f"configuration file not found: {args.config}")

    try:
        config = load_config(args.config)
    except (ValueError, TypeError, yaml.YAMLError) as e:
        parser.error(f"invalid configuration in {args.config}: {e}")

    setup_logging(config.logging)
    app = CrawlerApp(config)
    try:
        if args.dry_run:
            return asyncio.run(app.check())
        return asyncio.run(app.crawl(crawl_input, args.resume))
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())
