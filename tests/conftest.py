"""
Test configuration and fixtures for crawler tests
"""

from typing import Dict, List, Optional, Set
from unittest.mock import AsyncMock, MagicMock

import pytest
from bs4 import BeautifulSoup
from fakeredis import FakeServer, aioredis

from stepcrawl.crawler.browser import (
    Browser, BrowserSession, TITLE_QUERY, BODY_HTML_QUERY, LINK_HREFS_QUERY, LOCATION_QUERY
)
from stepcrawl.crawler.fetcher import FetchResult
from stepcrawl.storage.blob_store import FileBlobStore
from stepcrawl.storage.frontier import FrontierStore
from stepcrawl.storage.history import HistoryRecorder
from stepcrawl.utils.config import Config, CrawlerConfig
from stepcrawl.utils.monitoring import initialize_monitoring


BASE_URL = "https://ex.com"


def page(title: str, *hrefs: str, body: str = "") -> str:
    """Canned HTML page with a title, some text and links."""
    links = "".join(f'<a href="{href}">{href}</a>' for href in hrefs)
    return (
        f"<html><head><title>{title}</title></head>"
        f"<body><h1>{title}</h1><p>{body or title + ' text'}</p>{links}</body></html>"
    )


class FakeSite:
    """Pages served to fake browser sessions, keyed by absolute url."""

    def __init__(self, pages: Dict[str, str], failing: Optional[Set[str]] = None):
        self.pages = pages
        self.failing = failing or set()
        self.navigations: List[str] = []
        self.opened = 0
        self.closed = 0


class FakeSession(BrowserSession):
    """Answers the DOM queries from the canned HTML of the loaded url."""

    def __init__(self, site: FakeSite):
        self.site = site
        self._url = "about:blank"
        self._soup: Optional[BeautifulSoup] = None

    async def navigate(self, url: str):
        self.site.navigations.append(url)
        if url in self.site.failing:
            raise RuntimeError(f"net::ERR_CONNECTION_RESET at {url}")
        if url not in self.site.pages:
            raise RuntimeError(f"net::ERR_NAME_NOT_RESOLVED at {url}")
        self._url = url
        self._soup = BeautifulSoup(self.site.pages[url], 'html.parser')

    async def evaluate(self, query: str):
        if query == LOCATION_QUERY:
            return self._url
        if self._soup is None:
            raise RuntimeError("No page loaded")
        if query == TITLE_QUERY:
            return self._soup.title.string if self._soup.title else ''
        if query == BODY_HTML_QUERY:
            return self._soup.body.decode_contents() if self._soup.body else ''
        if query == LINK_HREFS_QUERY:
            return [a.get('href') for a in self._soup.find_all('a')]
        raise ValueError(f"Unsupported query: {query}")

    def current_url(self) -> str:
        return self._url

    async def close(self):
        self.site.closed += 1


class FakeBrowser(Browser):
    def __init__(self, site: FakeSite):
        self.site = site

    async def open(self) -> BrowserSession:
        self.site.opened += 1
        return FakeSession(self.site)


@pytest.fixture
def redis_client():
    """Async Redis double with its own server per test"""
    return aioredis.FakeRedis(server=FakeServer(), decode_responses=True)


@pytest.fixture
def frontier(redis_client):
    return FrontierStore(redis_client, key_prefix="test:frontier:")


@pytest.fixture
def history(redis_client):
    return HistoryRecorder(redis_client, key_prefix="test:history:")


@pytest.fixture
async def blob_store(tmp_path):
    store = FileBlobStore(str(tmp_path / "data"))
    await store.initialize()
    return store


@pytest.fixture
def mock_fetcher():
    """Fetcher without robots.txt anywhere and a fixed Last-Modified header"""
    fetcher = MagicMock()
    fetcher.start = AsyncMock()
    fetcher.close = AsyncMock()
    fetcher.get = AsyncMock(side_effect=lambda url: FetchResult(url=url, status_code=404, content="Not Found"))
    fetcher.head = AsyncMock(return_value={'Last-Modified': 'Wed, 21 Oct 2015 07:28:00 GMT'})
    return fetcher


@pytest.fixture
def monitor():
    return initialize_monitoring(enable_prometheus=False)


@pytest.fixture
def site():
    """A links to B and C (and off-site), B links back to A"""
    return FakeSite({
        f"{BASE_URL}/": page("A", "/b", f"{BASE_URL}/c", "https://other.com/x", "mailto:a@ex.com"),
        f"{BASE_URL}/b": page("B", "/"),
        f"{BASE_URL}/c": page("C"),
    })


@pytest.fixture
def browser(site):
    return FakeBrowser(site)


def make_config(**crawler_overrides) -> Config:
    values = dict(
        state_machine_url_threshold=100,
        parallel_urls_to_sync=4,
        max_execution_steps=1000,
        step_retry_attempts=3,
        step_retry_backoff=0,
    )
    values.update(crawler_overrides)
    return Config(crawler=CrawlerConfig(**values))
