from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from dashsync.payload import JSONValue
from dashsync.requester import FailoverRequester
from dashsync.session import CacheEntry, SessionContext

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 8.0


class RequestCache:
    """TTL cache plus in-flight dedup for idempotent GETs.

    Non-forced callers that arrive while a request for the same key is pending
    share that request and observe the same payload. ``force=True`` skips both
    the freshness check and the in-flight check unless ``dedup_forced`` is set,
    in which case a forced call still joins a pending request.
    """

    def __init__(
        self,
        requester: FailoverRequester,
        session: SessionContext,
        *,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        dedup_forced: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._requester = requester
        self._session = session
        self.default_ttl_seconds = max(0.0, default_ttl_seconds)
        self.dedup_forced = dedup_forced
        self._clock = clock

    async def get(self, path: str, *, force: bool = False, ttl_seconds: float | None = None) -> JSONValue:
        ttl = self.default_ttl_seconds if ttl_seconds is None else max(0.0, float(ttl_seconds))
        session = self._session
        key = session.cache_key(path)

        if not force and ttl > 0:
            cached = session.cache.get(key)
            if cached is not None and (self._clock() - cached.inserted_at) < ttl:
                return cached.payload

        if not force or self.dedup_forced:
            pending = session.inflight.get(key)
            if pending is not None:
                return await asyncio.shield(pending)

        # Registered before the first await so concurrent callers see it.
        task = asyncio.ensure_future(self._fetch(key, path, ttl, session.generation))
        session.inflight[key] = task
        task.add_done_callback(lambda t, k=key: self._settle(k, t))
        return await asyncio.shield(task)

    async def _fetch(self, key: str, path: str, ttl: float, generation: int) -> JSONValue:
        payload = await self._requester.request("GET", path)
        session = self._session
        if ttl > 0 and session.generation == generation:
            session.cache[key] = CacheEntry(key=key, payload=payload, inserted_at=self._clock())
        return payload

    def _settle(self, key: str, task: asyncio.Task) -> None:
        if self._session.inflight.get(key) is task:
            del self._session.inflight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug("api_get_failed key_path=%s error=%s", key.rsplit("|", 1)[-1], task.exception())

    def invalidate(self, path: str | None = None) -> None:
        if path is None:
            self._session.cache.clear()
            return
        self._session.cache.pop(self._session.cache_key(path), None)
