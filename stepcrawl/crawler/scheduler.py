"""
Execution engine that drives the crawl steps.

It plays the part of an external workflow scheduler: it invokes each step,
retries steps that fail on storage errors, counts the steps recorded by an
execution and, when the orchestrator asks for it, starts a fresh execution of
the same crawl so no single execution exceeds its step ceiling.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .browser import Browser, PlaywrightBrowser
from .extractor import PageExtractor
from .fetcher import WebFetcher
from .link_filter import RobotsChecker
from .models import CrawlContext, CrawlInput, ExecutionResult, StepDecision
from .orchestrator import CrawlOrchestrator
from ..storage.blob_store import BlobStore, BlobStoreError, create_blob_store
from ..storage.frontier import FrontierStore
from ..storage.history import HistoryRecorder
from ..utils.config import Config
from ..utils.logger import get_crawler_logger
from ..utils.monitoring import CrawlerMonitor, initialize_monitoring


T = TypeVar('T')

# Transient failures worth retrying a step for; steps are idempotent
RETRYABLE_ERRORS = (RedisError, BlobStoreError, OSError)


class StepLimitExceeded(Exception):
    """An execution recorded more steps than the engine allows."""
    pass


class ExecutionLimitReached(Exception):
    """A crawl needed more executions than the engine allows."""
    pass


@dataclass
class ExecutionStats:
    """Statistics for one execution."""
    start_time: float
    steps: int = 0
    iterations: int = 0

    @property
    def elapsed_time(self) -> float:
        return time.time() - self.start_time


class ExecutionEngine:
    """
    Runs crawls to completion as a sequence of step-budgeted executions.
    """

    def __init__(self, config: Config,
                 redis_client: Optional[redis.Redis] = None,
                 browser: Optional[Browser] = None,
                 fetcher: Optional[WebFetcher] = None,
                 blob_store: Optional[BlobStore] = None,
                 monitor: Optional[CrawlerMonitor] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)

        self.redis_client = redis_client
        self.browser = browser
        self.fetcher = fetcher
        self.blob_store = blob_store
        self.monitor = monitor

        self.frontier: Optional[FrontierStore] = None
        self.history: Optional[HistoryRecorder] = None
        self.orchestrator: Optional[CrawlOrchestrator] = None
        self.active_crawl_id: Optional[str] = None
        self._owns_redis = redis_client is None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def initialize(self):
        """Initialize all crawler components not supplied by the caller."""
        crawler = self.config.crawler
        try:
            if self.redis_client is None:
                self.redis_client = redis.Redis(
                    host=self.config.redis.host,
                    port=self.config.redis.port,
                    db=self.config.redis.db,
                    password=self.config.redis.password,
                    decode_responses=True
                )
                await self.redis_client.ping()
                self.logger.info("Redis connection established")

            if self.fetcher is None:
                self.fetcher = WebFetcher(
                    user_agent=crawler.user_agent,
                    request_timeout=crawler.request_timeout,
                    max_concurrent_requests=crawler.parallel_urls_to_sync
                )
            await self.fetcher.start()

            if self.browser is None:
                self.browser = PlaywrightBrowser(
                    user_agent=crawler.user_agent,
                    navigation_timeout=crawler.navigation_timeout,
                    headless=crawler.headless
                )
            await self.browser.start()

            if self.blob_store is None:
                self.blob_store = create_blob_store(self.config.storage)
            await self.blob_store.initialize()

            if self.monitor is None:
                self.monitor = initialize_monitoring(
                    self.config.monitoring.metrics_enabled,
                    self.config.monitoring.prometheus_port
                )

            self.frontier = FrontierStore(self.redis_client, self.config.redis.frontier_key_prefix)
            self.history = HistoryRecorder(self.redis_client, self.config.redis.history_key_prefix)
            extractor = PageExtractor(
                fetcher=self.fetcher,
                blob_store=self.blob_store,
                robots_checker=RobotsChecker(self.fetcher, crawler.user_agent),
                monitor=self.monitor
            )
            self.orchestrator = CrawlOrchestrator(
                config=crawler,
                frontier=self.frontier,
                history=self.history,
                extractor=extractor,
                browser=self.browser,
                monitor=self.monitor
            )

            self.logger.info("Execution engine initialized successfully")

        except Exception as e:
            self.logger.error(f"Failed to initialize execution engine: {e}")
            await self.close()
            raise

    def _require_orchestrator(self) -> CrawlOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("ExecutionEngine not initialized")
        return self.orchestrator

    async def _step(self, step: Callable[..., Awaitable[T]], *args) -> T:
        """Invoke one step, retrying it on transient storage failures."""
        crawler = self.config.crawler
        retrying = AsyncRetrying(
            stop=stop_after_attempt(crawler.step_retry_attempts),
            wait=wait_exponential(multiplier=crawler.step_retry_backoff, max=10),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            before_sleep=lambda state: self.logger.warning(
                f"Step {getattr(step, '__name__', step)} failed (attempt {state.attempt_number}), retrying: "
                f"{state.outcome.exception()}"
            ),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                return await step(*args)

    async def run(self, crawl_input: CrawlInput) -> ExecutionResult:
        """Start a new crawl and run it to completion."""
        orchestrator = self._require_orchestrator()
        crawl_input.validate()
        # Created once so every attempt of the start step seeds the same crawl
        context = CrawlContext.create(crawl_input)
        context = await self._step(orchestrator.start_crawl, crawl_input, context)
        return await self._drive(context)

    async def resume(self, crawl_id: str) -> ExecutionResult:
        """Carry on an unfinished crawl, for example after the process was stopped."""
        self._require_orchestrator()
        record = await self.history.get(crawl_id)
        if record is None or record.context is None:
            raise ValueError(f"Unknown crawl: {crawl_id}")
        if record.is_complete:
            self.logger.info(f"Crawl {crawl_id} already completed at {record.end_timestamp}")
            return ExecutionResult(crawl_id=crawl_id, executions=0, total_steps=0,
                                   decision=StepDecision.DONE)
        return await self._drive(record.context)

    async def _drive(self, context: CrawlContext) -> ExecutionResult:
        """Run executions of the crawl until it is complete."""
        log = get_crawler_logger(__name__, crawl_id=context.crawl_id, crawl_name=context.crawl_name)
        self.active_crawl_id = context.crawl_id
        max_executions = self.config.crawler.max_executions
        executions = 0
        total_steps = 0

        while True:
            if max_executions and executions >= max_executions:
                raise ExecutionLimitReached(
                    f"Crawl {context.crawl_id} not complete after {executions} executions"
                )
            executions += 1
            log.info(f"Starting execution {executions}")

            decision, steps = await self._run_execution(context)
            total_steps += steps
            log.info(f"Execution {executions} ended with {decision.value} after {steps} steps")

            if decision is StepDecision.DONE:
                return ExecutionResult(
                    crawl_id=context.crawl_id,
                    executions=executions,
                    total_steps=total_steps,
                    decision=decision,
                )

    async def _run_execution(self, context: CrawlContext) -> Tuple[StepDecision, int]:
        """
        One bounded execution: crawl batches until the orchestrator reports the
        crawl is done or must continue in a fresh execution.
        """
        orchestrator = self._require_orchestrator()
        stats = ExecutionStats(start_time=time.time())
        if self.monitor:
            self.monitor.record_execution_started()

        await self._step(orchestrator.resume_execution, context)

        while True:
            paths = await self._step(orchestrator.read_queued_urls, context)
            if stats.steps + len(paths) > self.config.crawler.max_execution_steps:
                raise StepLimitExceeded(
                    f"Execution would record {stats.steps + len(paths)} steps, "
                    f"ceiling is {self.config.crawler.max_execution_steps}"
                )

            await self._crawl_batch(paths, context)
            stats.steps += len(paths)
            stats.iterations += 1

            decision = await self._step(orchestrator.next_action, context, stats.steps)
            if decision is StepDecision.LOOP and not paths:
                # Work remains but none was handed out; a fresh execution reclaims it
                decision = StepDecision.CONTINUE

            if decision is not StepDecision.LOOP:
                self.logger.info(
                    f"Execution ended with {decision.value}: {stats.steps} steps in "
                    f"{stats.iterations} batches, {stats.elapsed_time:.1f}s"
                )

            if decision is StepDecision.DONE:
                await self._step(orchestrator.complete_crawl, context)
                return decision, stats.steps
            if decision is StepDecision.CONTINUE:
                await self._step(orchestrator.continue_execution, context)
                return decision, stats.steps

    async def _crawl_batch(self, paths: List[str], context: CrawlContext):
        """Crawl a batch of paths concurrently, bounded by the configured parallelism."""
        if not paths:
            return
        orchestrator = self._require_orchestrator()
        semaphore = asyncio.Semaphore(self.config.crawler.parallel_urls_to_sync)

        async def crawl(path: str):
            async with semaphore:
                return await self._step(orchestrator.crawl_page_and_queue_urls, path, context)

        results = await asyncio.gather(*(crawl(path) for path in paths), return_exceptions=True)
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            self.logger.error(f"{len(errors)} of {len(paths)} crawl steps failed")
            raise errors[0]

    def _log_final_stats(self):
        summary = self.monitor.get_summary()
        self.logger.info("=== CRAWL STATISTICS ===")
        self.logger.info(f"Runtime: {summary['runtime_seconds']:.1f}s")
        for name, value in sorted(summary['metrics'].items()):
            self.logger.info(f"{name}: {value}")
        self.logger.info(f"Pages per minute: {summary['rates']['pages_per_minute']:.1f}")

    async def close(self):
        """Close all connections and cleanup resources."""
        if self.monitor:
            self._log_final_stats()
        if self.browser:
            await self.browser.close()
        if self.fetcher:
            await self.fetcher.close()
        if self.blob_store:
            await self.blob_store.close()
        if self.redis_client is not None and self._owns_redis:
            await self.redis_client.aclose()
            self.redis_client = None
        self.logger.info("Execution engine closed")
