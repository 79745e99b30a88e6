"""
Frontier store: the durable, deduplicated queue and visited set of a crawl.

Every path of a crawl is in at most one of three Redis sets:

    queued      discovered, waiting to be handed out
    dispatched  handed out by dequeue_batch, not yet marked visited
    visited     marked visited, never queued again

Conditional writes use WATCH/MULTI transactions so concurrent steps and retried
steps cannot corrupt the dedup state.
"""

import json
import logging
from typing import Dict, Iterable, List, Optional

import redis.asyncio as redis
from redis.asyncio.client import Pipeline

from ..crawler.models import PathState, utc_now_iso


class FrontierError(Exception):
    """Base exception for frontier bookkeeping failures."""
    pass


class FrontierAlreadyExists(FrontierError):
    pass


class FrontierNotFound(FrontierError):
    pass


class FrontierNotDrained(FrontierError):
    pass


def _decode(value) -> str:
    return value.decode('utf-8') if isinstance(value, bytes) else value


class FrontierStore:
    """
    Queue plus visited set of one crawl per frontier id, stored in Redis.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "stepcrawl:frontier:"):
        self.redis_client = redis_client
        self.key_prefix = key_prefix
        self.logger = logging.getLogger(__name__)

    def _key(self, frontier_id: str, part: str) -> str:
        return f"{self.key_prefix}{frontier_id}:{part}"

    def _keys(self, frontier_id: str) -> Dict[str, str]:
        return {
            'meta': self._key(frontier_id, 'meta'),
            PathState.QUEUED.value: self._key(frontier_id, PathState.QUEUED.value),
            PathState.DISPATCHED.value: self._key(frontier_id, PathState.DISPATCHED.value),
            PathState.VISITED.value: self._key(frontier_id, PathState.VISITED.value),
        }

    async def _require_exists(self, pipe: Pipeline, meta_key: str, frontier_id: str):
        if not await pipe.exists(meta_key):
            await pipe.reset()
            raise FrontierNotFound(f"Frontier does not exist: {frontier_id}")

    async def create(self, frontier_id: str):
        """Create an empty frontier. Raises FrontierAlreadyExists if it already exists."""
        meta = json.dumps({'created_at': utc_now_iso()})
        created = await self.redis_client.set(self._key(frontier_id, 'meta'), meta, nx=True)
        if not created:
            raise FrontierAlreadyExists(f"Frontier already exists: {frontier_id}")
        self.logger.info(f"Created frontier {frontier_id}")

    async def exists(self, frontier_id: str) -> bool:
        return bool(await self.redis_client.exists(self._key(frontier_id, 'meta')))

    async def mark_visited(self, frontier_id: str, path: str) -> bool:
        """
        Mark a path visited, removing it from the queued and dispatched sets.
        Idempotent; returns once Redis has acknowledged the write. Returns False
        when the path was already visited.
        """
        keys = self._keys(frontier_id)

        async def _mark(pipe: Pipeline):
            await self._require_exists(pipe, keys['meta'], frontier_id)
            pipe.multi()
            pipe.sadd(keys[PathState.VISITED.value], path)
            pipe.srem(keys[PathState.QUEUED.value], path)
            pipe.srem(keys[PathState.DISPATCHED.value], path)

        added, _, _ = await self.redis_client.transaction(_mark, keys['meta'])
        self.logger.debug(f"Marked path as visited: {path}")
        return bool(added)

    async def enqueue(self, frontier_id: str, paths: Iterable[str]) -> int:
        """
        Queue the paths that are not already visited, queued or dispatched.
        Returns the number of paths added.
        """
        candidates = sorted({path for path in paths if path})
        if not candidates:
            return 0
        keys = self._keys(frontier_id)

        async def _enqueue(pipe: Pipeline) -> List[str]:
            await self._require_exists(pipe, keys['meta'], frontier_id)
            known = [
                await pipe.smismember(keys[state.value], candidates)
                for state in (PathState.VISITED, PathState.DISPATCHED, PathState.QUEUED)
            ]
            new_paths = [
                path for path, *flags in zip(candidates, *known)
                if not any(flags)
            ]
            pipe.multi()
            if new_paths:
                pipe.sadd(keys[PathState.QUEUED.value], *new_paths)
            return new_paths

        new_paths = await self.redis_client.transaction(
            _enqueue,
            keys['meta'],
            keys[PathState.VISITED.value],
            keys[PathState.DISPATCHED.value],
            keys[PathState.QUEUED.value],
            value_from_callable=True,
        )
        self.logger.debug(f"Enqueued {len(new_paths)} new paths into frontier {frontier_id}")
        return len(new_paths)

    async def dequeue_batch(self, frontier_id: str, limit: int) -> List[str]:
        """
        Hand out at most `limit` queued paths, moving them to dispatched in the
        same transaction so concurrent callers never receive the same path.
        """
        if limit <= 0:
            return []
        keys = self._keys(frontier_id)

        async def _dequeue(pipe: Pipeline) -> List[str]:
            await self._require_exists(pipe, keys['meta'], frontier_id)
            members = await pipe.srandmember(keys[PathState.QUEUED.value], limit)
            members = [_decode(member) for member in members or []]
            pipe.multi()
            if members:
                pipe.srem(keys[PathState.QUEUED.value], *members)
                pipe.sadd(keys[PathState.DISPATCHED.value], *members)
            return members

        return await self.redis_client.transaction(
            _dequeue,
            keys['meta'],
            keys[PathState.QUEUED.value],
            value_from_callable=True,
        )

    async def reclaim_dispatched(self, frontier_id: str) -> int:
        """
        Return dispatched paths that were never marked visited to the queue. Only
        valid while no other execution of the crawl is running, since those paths
        can then only belong to an execution that stopped before visiting them.
        """
        keys = self._keys(frontier_id)

        async def _reclaim(pipe: Pipeline) -> List[str]:
            await self._require_exists(pipe, keys['meta'], frontier_id)
            members = [_decode(m) for m in await pipe.smembers(keys[PathState.DISPATCHED.value])]
            pipe.multi()
            if members:
                pipe.srem(keys[PathState.DISPATCHED.value], *members)
                pipe.sadd(keys[PathState.QUEUED.value], *members)
            return members

        reclaimed = await self.redis_client.transaction(
            _reclaim,
            keys['meta'],
            keys[PathState.DISPATCHED.value],
            value_from_callable=True,
        )
        if reclaimed:
            self.logger.info(f"Reclaimed {len(reclaimed)} dispatched paths in frontier {frontier_id}")
        return len(reclaimed)

    async def remaining_count(self, frontier_id: str) -> int:
        """Queued plus dispatched paths."""
        keys = self._keys(frontier_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            pipe.scard(keys[PathState.QUEUED.value])
            pipe.scard(keys[PathState.DISPATCHED.value])
            queued, dispatched = await pipe.execute()
        return int(queued) + int(dispatched)

    async def visited_count(self, frontier_id: str) -> int:
        return int(await self.redis_client.scard(self._key(frontier_id, PathState.VISITED.value)))

    async def is_visited(self, frontier_id: str, path: str) -> bool:
        return bool(await self.redis_client.sismember(self._key(frontier_id, PathState.VISITED.value), path))

    async def get_state(self, frontier_id: str, path: str) -> Optional[PathState]:
        """State of a single path, None if the frontier has never seen it."""
        for state in (PathState.VISITED, PathState.DISPATCHED, PathState.QUEUED):
            if await self.redis_client.sismember(self._key(frontier_id, state.value), path):
                return state
        return None

    async def get_stats(self, frontier_id: str) -> Dict[str, int]:
        """Get frontier statistics."""
        keys = self._keys(frontier_id)
        async with self.redis_client.pipeline(transaction=True) as pipe:
            for state in PathState:
                pipe.scard(keys[state.value])
            counts = await pipe.execute()
        return {state.value: int(count) for state, count in zip(PathState, counts)}

    async def destroy(self, frontier_id: str) -> bool:
        """
        Delete the frontier. Raises FrontierNotDrained while work remains; returns
        False when the frontier was already destroyed.
        """
        keys = self._keys(frontier_id)

        async def _destroy(pipe: Pipeline) -> bool:
            if not await pipe.exists(keys['meta']):
                await pipe.reset()
                return False
            queued = await pipe.scard(keys[PathState.QUEUED.value])
            dispatched = await pipe.scard(keys[PathState.DISPATCHED.value])
            if queued or dispatched:
                await pipe.reset()
                raise FrontierNotDrained(
                    f"Frontier {frontier_id} still has {queued + dispatched} paths remaining"
                )
            pipe.multi()
            pipe.delete(*keys.values())
            return True

        destroyed = await self.redis_client.transaction(
            _destroy,
            keys['meta'],
            keys[PathState.QUEUED.value],
            keys[PathState.DISPATCHED.value],
            value_from_callable=True,
        )
        if destroyed:
            self.logger.info(f"Destroyed frontier {frontier_id}")
        else:
            self.logger.info(f"Frontier {frontier_id} already destroyed")
        return destroyed
