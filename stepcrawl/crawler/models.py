"""
Data model shared by the crawl steps.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse


# Crawl names become directories of the blob store
MAX_CRAWL_NAME_PART_BYTES = 200


class CrawlInputError(ValueError):
    """Raised when a crawl is started with invalid input."""
    pass


class PathState(Enum):
    """State of a path in the frontier."""
    QUEUED = "queued"
    DISPATCHED = "dispatched"
    VISITED = "visited"


class StepDecision(Enum):
    """What the execution engine should do after a crawl loop iteration."""
    LOOP = "loop"
    CONTINUE = "continue"
    DONE = "done"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CrawlInput:
    """Input given to start a crawl."""
    base_url: str
    crawl_name: str
    path_keywords: Optional[Tuple[str, ...]] = None

    def validate(self):
        parsed = urlparse(self.base_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise CrawlInputError(f"base_url must be an absolute http(s) url: {self.base_url!r}")
        if not self.crawl_name or not self.crawl_name.strip():
            raise CrawlInputError("crawl_name must not be empty")
        if '..' in self.crawl_name.split('/'):
            raise CrawlInputError(f"crawl_name must not contain '..': {self.crawl_name!r}")
        if any(len(part.encode('utf-8')) > MAX_CRAWL_NAME_PART_BYTES for part in self.crawl_name.split('/')):
            raise CrawlInputError(f"crawl_name segments must be at most {MAX_CRAWL_NAME_PART_BYTES} bytes")


@dataclass(frozen=True)
class CrawlContext:
    """Immutable descriptor of one crawl, passed to every step."""
    crawl_id: str
    crawl_name: str
    base_url: str
    frontier_id: str
    start_timestamp: str
    path_keywords: Optional[Tuple[str, ...]] = None

    @classmethod
    def create(cls, crawl_input: CrawlInput) -> 'CrawlContext':
        crawl_id = str(uuid.uuid4())
        keywords = tuple(crawl_input.path_keywords) if crawl_input.path_keywords else None
        return cls(
            crawl_id=crawl_id,
            crawl_name=crawl_input.crawl_name,
            base_url=crawl_input.base_url,
            frontier_id=crawl_id,
            start_timestamp=utc_now_iso(),
            path_keywords=keywords,
        )

    @property
    def root_path(self) -> str:
        """Path the frontier is seeded with."""
        return urlparse(self.base_url).path or '/'

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'crawl_id': self.crawl_id,
            'crawl_name': self.crawl_name,
            'base_url': self.base_url,
            'frontier_id': self.frontier_id,
            'start_timestamp': self.start_timestamp,
            'path_keywords': list(self.path_keywords) if self.path_keywords else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'CrawlContext':
        """Create CrawlContext from dictionary."""
        keywords = data.get('path_keywords')
        return cls(
            crawl_id=data['crawl_id'],
            crawl_name=data['crawl_name'],
            base_url=data['base_url'],
            frontier_id=data['frontier_id'],
            start_timestamp=data['start_timestamp'],
            path_keywords=tuple(keywords) if keywords else None,
        )


@dataclass
class PageContent:
    """Content extracted from one page."""
    url: str
    metadata: Dict[str, str] = field(default_factory=dict)
    content: str = ""

    def to_dict(self) -> dict:
        return {'metadata': self.metadata, 'content': self.content}


@dataclass
class HistoryRecord:
    """Lifecycle timestamps of one crawl."""
    crawl_id: str
    start_timestamp: str
    end_timestamp: Optional[str] = None
    status: str = "running"
    continuations: int = 0
    context: Optional[CrawlContext] = None

    @property
    def is_complete(self) -> bool:
        return self.end_timestamp is not None


@dataclass
class ExecutionResult:
    """Outcome of running a crawl through the execution engine."""
    crawl_id: str
    executions: int
    total_steps: int
    decision: StepDecision
