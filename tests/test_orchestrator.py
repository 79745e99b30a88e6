"""
Crawl Orchestrator Tests

Individual steps: seeding, crawling one path and the continuation decision.
"""

from unittest.mock import AsyncMock

import pytest

from stepcrawl.crawler.extractor import PageExtractor
from stepcrawl.crawler.link_filter import RobotsChecker
from stepcrawl.crawler.models import CrawlContext, CrawlInput, CrawlInputError, PathState, StepDecision
from stepcrawl.crawler.orchestrator import CrawlOrchestrator
from stepcrawl.storage.blob_store import BlobStoreError
from stepcrawl.storage.frontier import FrontierNotFound
from stepcrawl.utils.config import CrawlerConfig

from conftest import BASE_URL


@pytest.fixture
def orchestrator(frontier, history, mock_fetcher, blob_store, browser, monitor):
    extractor = PageExtractor(mock_fetcher, blob_store, RobotsChecker(mock_fetcher, "stepcrawl"), monitor=monitor)
    config = CrawlerConfig(state_machine_url_threshold=10, parallel_urls_to_sync=5)
    return CrawlOrchestrator(config, frontier, history, extractor, browser, monitor)


@pytest.fixture
async def context(orchestrator):
    return await orchestrator.start_crawl(CrawlInput(base_url=BASE_URL, crawl_name="site"))


async def test_start_crawl_seeds_root(orchestrator, frontier, history, context):
    assert await frontier.get_state(context.frontier_id, "/") is PathState.QUEUED
    assert context.frontier_id == context.crawl_id

    record = await history.get(context.crawl_id)
    assert record.start_timestamp == context.start_timestamp
    assert record.end_timestamp is None


async def test_start_crawl_seeds_base_path(orchestrator, frontier):
    context = await orchestrator.start_crawl(CrawlInput(base_url=f"{BASE_URL}/docs", crawl_name="docs"))
    assert await frontier.dequeue_batch(context.frontier_id, 10) == ["/docs"]


@pytest.mark.parametrize("crawl_input", [
    CrawlInput(base_url="ex.com", crawl_name="site"),
    CrawlInput(base_url="ftp://ex.com", crawl_name="site"),
    CrawlInput(base_url=BASE_URL, crawl_name=" "),
    CrawlInput(base_url=BASE_URL, crawl_name="../up"),
    CrawlInput(base_url=BASE_URL, crawl_name="x" * 201),
])
async def test_start_crawl_rejects_invalid_input(orchestrator, crawl_input):
    with pytest.raises(CrawlInputError):
        await orchestrator.start_crawl(crawl_input)


async def test_start_crawl_can_be_repeated_with_its_context(orchestrator, frontier, history):
    crawl_input = CrawlInput(base_url=BASE_URL, crawl_name="site")
    context = CrawlContext.create(crawl_input)

    first = await orchestrator.start_crawl(crawl_input, context)
    again = await orchestrator.start_crawl(crawl_input, context)

    assert first == again == context
    assert await history.list_crawl_ids() == [context.crawl_id]
    assert await frontier.remaining_count(context.frontier_id) == 1


async def test_read_queued_urls_is_bounded(orchestrator, frontier, context):
    await frontier.enqueue(context.frontier_id, [f"/p{i}" for i in range(20)])

    batch = await orchestrator.read_queued_urls(context)

    assert len(batch) == 5


async def test_crawl_page_and_queue_urls(orchestrator, frontier, site, context, monitor):
    await frontier.dequeue_batch(context.frontier_id, 1)

    assert await orchestrator.crawl_page_and_queue_urls("/", context) == {}

    assert await frontier.get_stats(context.frontier_id) == {'queued': 2, 'dispatched': 0, 'visited': 1}
    assert site.opened == site.closed == 1
    assert monitor.metrics.get_value('pages_crawled_total') == 1
    assert monitor.metrics.get_value('paths_queued_total') == 2


async def test_failing_page_is_still_visited(orchestrator, frontier, site, context):
    site.failing.add(f"{BASE_URL}/")

    await orchestrator.crawl_page_and_queue_urls("/", context)

    assert await frontier.get_state(context.frontier_id, "/") is PathState.VISITED
    assert await frontier.remaining_count(context.frontier_id) == 0
    assert site.opened == site.closed == 1


async def test_session_open_failure_is_skipped(orchestrator, frontier, context, monitor):
    orchestrator.browser.open = AsyncMock(side_effect=RuntimeError("browser crashed"))

    await orchestrator.crawl_page_and_queue_urls("/", context)

    assert await frontier.is_visited(context.frontier_id, "/")
    assert monitor.metrics.get_value('pages_failed_total') == 1


async def test_storage_failure_propagates_and_closes_session(orchestrator, site, context):
    orchestrator.extractor.blob_store.put = AsyncMock(side_effect=BlobStoreError("disk full"))

    with pytest.raises(BlobStoreError):
        await orchestrator.crawl_page_and_queue_urls("/", context)
    assert site.opened == site.closed == 1


async def test_retried_step_crawls_page_again(orchestrator, frontier, site, context):
    await orchestrator.crawl_page_and_queue_urls("/", context)
    await orchestrator.crawl_page_and_queue_urls("/", context)

    assert site.navigations == [f"{BASE_URL}/", f"{BASE_URL}/"]
    assert await frontier.remaining_count(context.frontier_id) == 2


async def test_frontier_failure_propagates(orchestrator, context):
    missing = CrawlContext.from_dict({**context.to_dict(), 'frontier_id': 'missing'})
    with pytest.raises(FrontierNotFound):
        await orchestrator.crawl_page_and_queue_urls("/", missing)


async def queue_paths(frontier, context, count):
    await frontier.dequeue_batch(context.frontier_id, 10)
    await frontier.mark_visited(context.frontier_id, "/")
    if count:
        await frontier.enqueue(context.frontier_id, [f"/p{i}" for i in range(count)])


@pytest.mark.parametrize("remaining,steps_taken,expected", [
    (0, 0, StepDecision.DONE),
    (0, 10, StepDecision.DONE),
    (3, 5, StepDecision.LOOP),
    (3, 7, StepDecision.LOOP),
    (3, 8, StepDecision.CONTINUE),
    (20, 5, StepDecision.LOOP),
    (20, 6, StepDecision.CONTINUE),
])
async def test_next_action(orchestrator, frontier, context, monitor, remaining, steps_taken, expected):
    """Continue once the next batch would push the execution over the threshold"""
    await queue_paths(frontier, context, remaining)

    assert await orchestrator.next_action(context, steps_taken) is expected
    assert monitor.metrics.get_value('frontier_remaining') == remaining


async def test_dispatched_paths_count_as_remaining(orchestrator, frontier, context):
    await frontier.dequeue_batch(context.frontier_id, 1)
    assert await orchestrator.next_action(context, 0) is StepDecision.LOOP


async def test_continue_execution_records_continuation(orchestrator, history, context, monitor):
    await orchestrator.continue_execution(context)

    assert (await history.get(context.crawl_id)).continuations == 1
    assert monitor.metrics.get_value('continuations_total') == 1


async def test_complete_crawl(orchestrator, frontier, history, context):
    await queue_paths(frontier, context, 0)

    assert await orchestrator.complete_crawl(context) == {}
    # Retry of the completion step is harmless
    assert await orchestrator.complete_crawl(context) == {}

    assert not await frontier.exists(context.frontier_id)
    record = await history.get(context.crawl_id)
    assert record.is_complete
    assert record.end_timestamp >= record.start_timestamp


async def test_resume_execution_reclaims(orchestrator, frontier, context):
    await frontier.dequeue_batch(context.frontier_id, 1)
    assert await orchestrator.resume_execution(context) == 1
    assert await frontier.get_state(context.frontier_id, "/") is PathState.QUEUED
