"""
History recorder: lifecycle timestamps of each crawl, one Redis hash per crawl id.
The record outlives the frontier.
"""

import json
import logging
from typing import List, Optional

import redis.asyncio as redis

from ..crawler.models import CrawlContext, HistoryRecord


class HistoryError(Exception):
    """Custom exception for history operations."""
    pass


def _decode(value) -> Optional[str]:
    return value.decode('utf-8') if isinstance(value, bytes) else value


class HistoryRecorder:
    """Stores one HistoryRecord per crawl id."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "stepcrawl:history:"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.index_key = f"{key_prefix}index"
        self.logger = logging.getLogger(__name__)

    def _key(self, crawl_id: str) -> str:
        return f"{self.key_prefix}{crawl_id}"

    async def put(self, context: CrawlContext):
        """Create the record of a crawl. Re-putting an existing record keeps its start timestamp."""
        key = self._key(context.crawl_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, 'start_timestamp', context.start_timestamp)
            pipe.hsetnx(key, 'status', 'running')
            pipe.hsetnx(key, 'continuations', 0)
            pipe.hset(key, 'context', json.dumps(context.to_dict()))
            pipe.sadd(self.index_key, context.crawl_id)
            await pipe.execute()
        self.logger.info(f"Wrote history entry for crawl {context.crawl_id}")

    async def update_end(self, crawl_id: str, end_timestamp: str) -> bool:
        """
        Set the end timestamp. It is written once; later calls keep the first value
        and return False.
        """
        key = self._key(crawl_id)
        if not await self.redis_client.exists(key):
            raise HistoryError(f"No history entry for crawl {crawl_id}")
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, 'end_timestamp', end_timestamp)
            pipe.hset(key, 'status', 'complete')
            written, _ = await pipe.execute()
        return bool(written)

    async def increment_continuations(self, crawl_id: str) -> int:
        return int(await self.redis_client.hincrby(self._key(crawl_id), 'continuations', 1))

    async def get(self, crawl_id: str) -> Optional[HistoryRecord]:
        data = await self.redis_client.hgetall(self._key(crawl_id))
        if not data:
            return None
        data = {_decode(k): _decode(v) for k, v in data.items()}

        context = None
        if data.get('context'):
            try:
                context = CrawlContext.from_dict(json.loads(data['context']))
            except (ValueError, KeyError) as e:
                raise HistoryError(f"Corrupt context in history entry {crawl_id}: {e}")

        return HistoryRecord(
            crawl_id=crawl_id,
            start_timestamp=data['start_timestamp'],
            end_timestamp=data.get('end_timestamp'),
            status=data.get('status', 'running'),
            continuations=int(data.get('continuations', 0)),
            context=context,
        )

    async def list_crawl_ids(self) -> List[str]:
        return sorted(_decode(m) for m in await self.redis_client.smembers(self.index_key))
