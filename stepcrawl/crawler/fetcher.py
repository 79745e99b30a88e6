"""
Plain HTTP client used beside the browser: header-only requests for page
metadata and small text downloads such as robots.txt.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from typing import Dict, Optional

import aiohttp
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout


# robots.txt parsers stop reading at 500 KiB; nothing larger is downloaded
MAX_TEXT_BYTES = 512 * 1024


@dataclass
class FetchResult:
    """Outcome of a text download."""
    url: str
    status_code: int
    content: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    error: Optional[str] = None
    fetch_time: float = 0.0


@dataclass
class FetcherStats:
    head_requests: int = 0
    get_requests: int = 0
    failed_requests: int = 0
    oversized_responses: int = 0


class WebFetcher:
    """
    Shared aiohttp session for the HTTP requests a crawl makes outside the browser.
    """

    def __init__(self, user_agent: str, request_timeout: int = 30,
                 max_concurrent_requests: int = 10, max_text_bytes: int = MAX_TEXT_BYTES):
        self.user_agent = user_agent
        self.request_timeout = request_timeout
        self.max_concurrent_requests = max_concurrent_requests
        self.max_text_bytes = max_text_bytes

        self.logger = logging.getLogger(__name__)
        self.session: Optional[ClientSession] = None
        self.semaphore = asyncio.Semaphore(max_concurrent_requests)
        self.stats = FetcherStats()

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self):
        if self.session is not None:
            return
        self.session = aiohttp.ClientSession(
            timeout=ClientTimeout(total=self.request_timeout),
            headers={'User-Agent': self.user_agent},
            connector=aiohttp.TCPConnector(
                limit=self.max_concurrent_requests,
                ttl_dns_cache=300,
            )
        )
        self.logger.info(f"HTTP session opened (timeout {self.request_timeout}s)")

    async def close(self):
        if self.session is not None:
            await self.session.close()
            self.session = None
            self.logger.info(f"HTTP session closed: {self.get_stats()}")

    def _require_session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError("WebFetcher not started")
        return self.session

    async def head(self, url: str) -> Dict[str, str]:
        """
        Send a HEAD request, following redirects, and return the response headers.

        Raises:
            aiohttp.ClientResponseError: for non-2xx responses
            aiohttp.ClientError, asyncio.TimeoutError: on transport failures
        """
        session = self._require_session()
        async with self.semaphore:
            self.stats.head_requests += 1
            try:
                async with session.head(url, allow_redirects=True) as response:
                    response.raise_for_status()
                    return dict(response.headers)
            except (ClientError, asyncio.TimeoutError):
                self.stats.failed_requests += 1
                raise

    async def get(self, url: str) -> FetchResult:
        """
        Download a url as text. Transport failures are reported in the result's
        error field instead of being raised.
        """
        session = self._require_session()
        started = time.monotonic()

        async with self.semaphore:
            self.stats.get_requests += 1
            try:
                async with session.get(url) as response:
                    text = await self._read_text(response)
                    self.logger.debug(f"GET {url}: {response.status}")
                    return FetchResult(
                        url=url,
                        status_code=response.status,
                        content=text,
                        headers=dict(response.headers),
                        fetch_time=time.monotonic() - started,
                    )
            except asyncio.TimeoutError:
                error = "Request timeout"
            except ClientError as e:
                error = f"Client error: {e}"

        self.stats.failed_requests += 1
        self.logger.warning(f"GET {url} failed: {error}")
        return FetchResult(url=url, status_code=0, error=error, fetch_time=time.monotonic() - started)

    async def _read_text(self, response: ClientResponse) -> Optional[str]:
        """Body decoded as text, None when it exceeds the size limit."""
        declared = response.content_length
        if declared is not None and declared > self.max_text_bytes:
            self.stats.oversized_responses += 1
            self.logger.warning(f"Skipping {response.url}: {declared} bytes declared")
            return None

        body = bytearray()
        async for chunk in response.content.iter_chunked(8192):
            body.extend(chunk)
            if len(body) > self.max_text_bytes:
                self.stats.oversized_responses += 1
                self.logger.warning(f"Skipping {response.url}: body over {self.max_text_bytes} bytes")
                return None

        try:
            return body.decode(response.charset or 'utf-8')
        except (UnicodeDecodeError, LookupError):
            return body.decode('utf-8', errors='replace')

    def get_stats(self) -> Dict[str, int]:
        return asdict(self.stats)
