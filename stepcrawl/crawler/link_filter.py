"""
URL classification used to decide which discovered links are followed.
"""

import logging
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urljoin, urlparse
from urllib.robotparser import RobotFileParser

from .fetcher import WebFetcher


logger = logging.getLogger(__name__)


def is_relative_url(url: str) -> bool:
    """A url with neither scheme nor network location ('//host/x' is not relative)."""
    parsed = urlparse(url)
    return not parsed.scheme and not parsed.netloc


def is_url_within_base_website(url: str, base_url: str) -> bool:
    """
    Return whether the url belongs to the crawled website: it is relative, or it is
    an absolute url starting with the base url. This is a plain string prefix test,
    so other ports or subdomains are excluded unless the base url is their prefix.
    """
    return is_relative_url(url) or url.startswith(base_url)


def is_url_matching_some_keyword(url: str, keywords: Optional[Sequence[str]] = None) -> bool:
    """
    Return whether any of the keywords appear in the url, ignoring case. Urls are
    included by default when no keywords are supplied.
    """
    if not keywords:
        return True
    lowered = url.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


def resolve_url(url: str, base_url: str, current_location: str) -> str:
    """
    Make a link absolute. Links starting with the base url are kept as they are,
    others are resolved against the location of the page they were found on and
    reduced to origin and path.
    """
    if url.startswith(base_url):
        return url
    resolved = urlparse(urljoin(current_location, url))
    return f"{resolved.scheme}://{resolved.netloc}{resolved.path}"


def url_to_path(url: str) -> str:
    """Path component of an absolute url, '/' when empty."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute url: {url!r}")
    return parsed.path or '/'


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


class RobotsPolicy:
    """Parsed robots.txt of one site."""

    def __init__(self, parser: Optional[RobotFileParser], user_agent: str):
        self.parser = parser
        self.user_agent = user_agent

    @classmethod
    def allow_all(cls, user_agent: str) -> 'RobotsPolicy':
        return cls(None, user_agent)

    def is_allowed(self, url: str) -> bool:
        if self.parser is None:
            return True
        try:
            return self.parser.can_fetch(self.user_agent, url)
        except Exception as e:
            logger.warning(f"Robots check failed for {url}, allowing: {e}")
            return True


class RobotsChecker:
    """
    Loads robots.txt for a site. Every load fetches the document again, there is no
    cache shared between calls. Any failure to fetch or parse fails open.
    """

    def __init__(self, fetcher: WebFetcher, user_agent: str):
        self.fetcher = fetcher
        self.user_agent = user_agent

    async def load(self, url: str) -> RobotsPolicy:
        """Fetch and parse robots.txt for the site of the given url."""
        robots_url = origin_of(url) + '/robots.txt'
        try:
            result = await self.fetcher.get(robots_url)
        except Exception as e:
            logger.debug(f"Could not fetch {robots_url}, allowing all: {e}")
            return RobotsPolicy.allow_all(self.user_agent)

        if result.error or result.status_code != 200 or result.content is None:
            # No robots.txt, so all urls are allowed
            return RobotsPolicy.allow_all(self.user_agent)

        try:
            parser = RobotFileParser()
            parser.set_url(robots_url)
            parser.parse(result.content.splitlines())
        except Exception as e:
            logger.warning(f"Could not parse {robots_url}, allowing all: {e}")
            return RobotsPolicy.allow_all(self.user_agent)

        return RobotsPolicy(parser, self.user_agent)


def filter_links(hrefs: Iterable[Optional[str]], base_url: str, current_location: str,
                 robots: RobotsPolicy, keywords: Optional[Sequence[str]] = None) -> List[str]:
    """
    Return the absolute urls worth following: within the base website, allowed by
    robots.txt and matching some keyword. Empty hrefs are dropped.
    """
    followed = []
    for href in hrefs:
        if not href:
            continue
        href = href.strip()
        if not href or not is_url_within_base_website(href, base_url):
            continue
        url = resolve_url(href, base_url, current_location)
        if robots.is_allowed(url) and is_url_matching_some_keyword(url, keywords):
            followed.append(url)
    return followed
