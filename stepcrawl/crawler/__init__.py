"""
Web crawler core components.
"""

from .models import (
    CrawlInput, CrawlInputError, CrawlContext, PageContent, HistoryRecord,
    ExecutionResult, PathState, StepDecision
)
from .fetcher import WebFetcher, FetchResult
from .parser import ContentParser
from .browser import Browser, BrowserSession, PlaywrightBrowser
from .link_filter import RobotsChecker, RobotsPolicy, filter_links

__all__ = [
    'CrawlInput', 'CrawlInputError', 'CrawlContext', 'PageContent', 'HistoryRecord',
    'ExecutionResult', 'PathState', 'StepDecision',
    'WebFetcher', 'FetchResult',
    'ContentParser',
    'Browser', 'BrowserSession', 'PlaywrightBrowser',
    'RobotsChecker', 'RobotsPolicy', 'filter_links',
]
