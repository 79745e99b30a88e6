"""
Page extraction: load one page in a browser session, store its content as
markdown and return the paths it links to.
"""

import asyncio
import logging
from typing import List, Optional, Sequence, Set
from urllib.parse import urljoin

from aiohttp import ClientError

from .browser import BrowserSession, TITLE_QUERY, BODY_HTML_QUERY, LINK_HREFS_QUERY, LOCATION_QUERY
from .fetcher import WebFetcher
from .link_filter import RobotsChecker, filter_links, url_to_path
from .models import CrawlContext, PageContent
from .parser import ContentParser
from ..storage.blob_store import BlobStore, page_key, serialize_page
from ..utils.monitoring import CrawlerMonitor


class PageExtractor:
    """
    Extracts content and links from pages rendered in browser sessions.
    """

    def __init__(self, fetcher: WebFetcher, blob_store: BlobStore, robots_checker: RobotsChecker,
                 parser: Optional[ContentParser] = None, monitor: Optional[CrawlerMonitor] = None):
        self.fetcher = fetcher
        self.blob_store = blob_store
        self.robots_checker = robots_checker
        self.parser = parser or ContentParser()
        self.monitor = monitor
        self.logger = logging.getLogger(__name__)

    async def get_last_modified(self, url: str) -> str:
        """Last-Modified header from a HEAD request, empty string on any failure."""
        try:
            headers = await self.fetcher.head(url)
        except (ClientError, asyncio.TimeoutError, RuntimeError, ValueError) as e:
            self.logger.debug(f"No last-modified for {url}: {e}")
            return ''
        return headers.get('Last-Modified', '')

    async def extract(self, session: BrowserSession, url: str) -> PageContent:
        """
        Load the url and return its metadata and markdown content.

        The page is considered loaded once the network has settled, so client side
        rendered content is included.
        """
        await session.navigate(url)

        title, html_content = await asyncio.gather(
            session.evaluate(TITLE_QUERY),
            session.evaluate(BODY_HTML_QUERY),
        )
        current_url = session.current_url()
        last_modified = await self.get_last_modified(current_url)

        return PageContent(
            url=current_url,
            metadata={
                'title': title or '',
                'last-modified': last_modified,
                'url': current_url,
            },
            content=self.parser.to_markdown(html_content or ''),
        )

    async def write_page(self, url: str, content: PageContent, crawl_name: str) -> bool:
        """Store the page content under the crawl name. Pages without content are skipped."""
        if not content.content or not content.metadata:
            self.logger.info(f"Page has no content, skipping: {url}")
            return False

        key = page_key(crawl_name, url)
        await self.blob_store.put(key, serialize_page(content))
        self.logger.info(f"Written page content to {key}")
        if self.monitor:
            self.monitor.record_page_stored()
        return True

    async def discover_links(self, session: BrowserSession, base_url: str,
                             keywords: Optional[Sequence[str]] = None) -> Set[str]:
        """
        Return the absolute urls on the loaded page that may be queued for crawling.
        Relative links are resolved against the page's own location.
        """
        hrefs = await session.evaluate(LINK_HREFS_QUERY) or []
        current_location = await session.evaluate(LOCATION_QUERY) or session.current_url()

        robots = await self.robots_checker.load(current_location)
        return set(filter_links(hrefs, base_url, current_location, robots, keywords))

    def urls_to_paths(self, urls: Set[str]) -> List[str]:
        """Reduce absolute urls to the paths tracked by the frontier."""
        paths = set()
        for url in urls:
            try:
                paths.add(url_to_path(url))
            except ValueError as e:
                self.logger.warning(f"Url {url} was not valid and will be skipped: {e}")
        return sorted(paths)

    async def extract_page_content_and_urls(self, session: BrowserSession, context: CrawlContext,
                                            path: str) -> List[str]:
        """
        Visit one path of the crawl, store its content and return the paths it links to.

        Any failure while visiting or extracting the page is logged and yields no
        paths, so one bad page never fails the batch it belongs to. Storage failures
        are not caught.
        """
        url = urljoin(context.base_url, path)
        try:
            content = await self.extract(session, url)
        except Exception as e:
            self.logger.warning(f"Could not visit url {url}: {e}")
            self.logger.debug("Extraction failure details", exc_info=True)
            if self.monitor:
                self.monitor.record_page_failed()
            return []

        await self.write_page(url, content, context.crawl_name)

        try:
            discovered = await self.discover_links(session, context.base_url, context.path_keywords)
        except Exception as e:
            self.logger.warning(f"Could not discover links on {url}: {e}")
            return []

        paths = self.urls_to_paths(discovered)
        self.logger.debug(f"Discovered {len(paths)} paths on {url}")
        return paths
