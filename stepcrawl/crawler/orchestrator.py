"""
Crawl orchestrator: the individual steps of a crawl.

Each public coroutine is one step invoked by the execution engine. Steps only
depend on their arguments and the durable stores, so any of them can be retried
and a crawl can be carried on by a fresh execution holding the same context.
"""

import logging
from typing import Dict, List, Optional

from redis.exceptions import RedisError

from .browser import Browser
from .extractor import PageExtractor
from .models import CrawlContext, CrawlInput, StepDecision, utc_now_iso
from ..storage.blob_store import BlobStoreError
from ..storage.frontier import FrontierAlreadyExists, FrontierError, FrontierStore
from ..storage.history import HistoryRecorder
from ..utils.config import CrawlerConfig
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor


# Failures of durable bookkeeping abort the step instead of being skipped
BOOKKEEPING_ERRORS = (RedisError, FrontierError, BlobStoreError)


class CrawlOrchestrator:
    """
    Seeds the frontier, crawls batches of paths and decides whether the crawl
    loops, continues in a fresh execution, or is complete.
    """

    def __init__(self, config: CrawlerConfig, frontier: FrontierStore, history: HistoryRecorder,
                 extractor: PageExtractor, browser: Browser, monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.frontier = frontier
        self.history = history
        self.extractor = extractor
        self.browser = browser
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

    def _log(self, context: CrawlContext):
        return get_crawler_logger(__name__, crawl_id=context.crawl_id, crawl_name=context.crawl_name)

    async def start_crawl(self, crawl_input: CrawlInput,
                          context: Optional[CrawlContext] = None) -> CrawlContext:
        """
        Record the crawl in history, create its frontier and queue the root path.

        Pass a context created up front to make the step safe to retry: every
        attempt then works on the same crawl id, and a frontier left by an
        earlier attempt is reused.
        """
        crawl_input.validate()
        context = context or CrawlContext.create(crawl_input)
        log = self._log(context)

        await self.history.put(context)
        try:
            await self.frontier.create(context.frontier_id)
        except FrontierAlreadyExists:
            log.info(f"Frontier {context.frontier_id} already created, reusing it")
        await self.frontier.enqueue(context.frontier_id, [context.root_path])

        log.info(f"Started crawl of {context.base_url}, seeded with {context.root_path}")
        return context

    async def resume_execution(self, context: CrawlContext) -> int:
        """Prepare the frontier for a new execution of an existing crawl."""
        return await self.frontier.reclaim_dispatched(context.frontier_id)

    async def read_queued_urls(self, context: CrawlContext) -> List[str]:
        """Hand out the next batch of paths to crawl."""
        paths = await self.frontier.dequeue_batch(context.frontier_id, self.config.parallel_urls_to_sync)
        self._log(context).debug(f"Read {len(paths)} queued paths")
        return paths

    async def crawl_page_and_queue_urls(self, path: str, context: CrawlContext) -> Dict:
        """
        Crawl a single path: mark it visited, extract the page and queue the paths
        it links to. Page level failures are logged and skipped; frontier failures
        propagate.
        """
        log = self._log(context)

        # Marked first so a page that fails or loops is never picked up again
        if await self.frontier.mark_visited(context.frontier_id, path):
            log.log_path_event(logging.DEBUG, path, f"Marked path {path} as visited")
            if self.monitor:
                self.monitor.record_page_crawled()
        else:
            # Only a retried step sees its own path already visited
            log.log_path_event(logging.INFO, path, f"Path {path} already visited, crawling it again")

        session = None
        try:
            session = await self.browser.open()
            paths = await self.extractor.extract_page_content_and_urls(session, context, path)
        except Exception as e:
            if self._is_bookkeeping_error(e):
                raise
            log.error(f"Failed to crawl path {path}: {e}")
            if self.monitor:
                self.monitor.record_page_failed()
            return {}
        finally:
            if session is not None:
                await self._close_session(session, log)

        added = await self.frontier.enqueue(context.frontier_id, paths)
        log.info(f"Crawled {path}: {len(paths)} links, {added} new paths queued")
        if self.monitor:
            self.monitor.record_paths_queued(added)
        return {}

    @staticmethod
    def _is_bookkeeping_error(error: Exception) -> bool:
        return isinstance(error, BOOKKEEPING_ERRORS)

    async def _close_session(self, session, log):
        try:
            await session.close()
        except Exception as e:
            log.warning(f"Failed to close browser session: {e}")

    async def next_action(self, context: CrawlContext, steps_taken: int) -> StepDecision:
        """
        Decide what follows a crawl loop iteration. steps_taken is the number of
        pages crawled by the current execution, as counted by the engine.
        """
        remaining = await self.frontier.remaining_count(context.frontier_id)
        if self.monitor:
            self.monitor.update_frontier_remaining(remaining)

        if remaining == 0:
            return StepDecision.DONE

        projected = steps_taken + min(remaining, self.config.parallel_urls_to_sync)
        if projected > self.config.state_machine_url_threshold:
            self._log(context).info(
                f"{remaining} paths remaining, next batch would take the execution to "
                f"{projected} steps (threshold {self.config.state_machine_url_threshold})"
            )
            return StepDecision.CONTINUE
        return StepDecision.LOOP

    async def continue_execution(self, context: CrawlContext) -> Dict:
        """Record that the crawl is being carried on by a fresh execution."""
        continuations = await self.history.increment_continuations(context.crawl_id)
        if self.monitor:
            self.monitor.record_continuation()
        self._log(context).info(f"Continuing crawl in a new execution (continuation {continuations})")
        return {}

    async def complete_crawl(self, context: CrawlContext) -> Dict:
        """Destroy the frontier and write the end timestamp once nothing is left to visit."""
        log = self._log(context)

        visited = await self.frontier.visited_count(context.frontier_id)
        log.info(f"Deleting frontier {context.frontier_id} ({visited} paths visited)")
        await self.frontier.destroy(context.frontier_id)

        log.info("Writing end timestamp to history")
        await self.history.update_end(context.crawl_id, utc_now_iso())

        log.info("Crawl complete!")
        return {}
