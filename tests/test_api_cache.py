import asyncio

import httpx
import pytest

from dashsync.api_cache import RequestCache
from dashsync.errors import NetworkError
from dashsync.requester import FailoverRequester
from dashsync.session import SessionContext
from dashsync.settings import AuthConfig

BASE = "https://api.test"


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _cache(handler, *, dedup_forced: bool = False, clock: _Clock | None = None):
    session = SessionContext(auth=AuthConfig.clean(BASE, "key-a"))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    requester = FailoverRequester(session, default_base_url=BASE, client=client)
    cache = RequestCache(requester, session, dedup_forced=dedup_forced, clock=clock or _Clock())
    return cache, session


def _counting_handler(calls: list[str], *, delay: float = 0.0):
    async def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if delay:
            await asyncio.sleep(delay)
        return httpx.Response(200, json={"code": 200, "n": len(calls)})

    return handler


def test_reads_within_ttl_share_one_call() -> None:
    calls: list[str] = []
    clock = _Clock()
    cache, _ = _cache(_counting_handler(calls), clock=clock)

    async def run() -> None:
        first = await cache.get("/user/", ttl_seconds=15)
        clock.now += 5
        second = await cache.get("/user/", ttl_seconds=15)
        assert first == second
        assert len(calls) == 1
        clock.now += 11
        await cache.get("/user/", ttl_seconds=15)
        assert len(calls) == 2

    asyncio.run(run())


def test_zero_ttl_disables_caching() -> None:
    calls: list[str] = []
    cache, session = _cache(_counting_handler(calls))

    async def run() -> None:
        await cache.get("/news", ttl_seconds=0)
        await cache.get("/news", ttl_seconds=0)

    asyncio.run(run())
    assert len(calls) == 2
    assert session.cache == {}


def test_concurrent_reads_are_deduplicated() -> None:
    calls: list[str] = []
    cache, session = _cache(_counting_handler(calls, delay=0.01))

    async def run():
        return await asyncio.gather(cache.get("/product/"), cache.get("/product/"))

    a, b = asyncio.run(run())
    assert a is b
    assert calls == ["/product/"]
    assert session.inflight == {}


def test_forced_reads_bypass_dedup_by_default() -> None:
    calls: list[str] = []
    cache, _ = _cache(_counting_handler(calls, delay=0.01))

    async def run() -> None:
        await asyncio.gather(cache.get("/product/", force=True), cache.get("/product/", force=True))

    asyncio.run(run())
    assert len(calls) == 2


def test_forced_reads_join_inflight_when_configured() -> None:
    calls: list[str] = []
    cache, _ = _cache(_counting_handler(calls, delay=0.01), dedup_forced=True)

    async def run() -> None:
        await asyncio.gather(cache.get("/product/"), cache.get("/product/", force=True))

    asyncio.run(run())
    assert len(calls) == 1


def test_forced_read_skips_fresh_entry() -> None:
    calls: list[str] = []
    cache, _ = _cache(_counting_handler(calls))

    async def run() -> None:
        await cache.get("/user/", ttl_seconds=30)
        await cache.get("/user/", ttl_seconds=30, force=True)

    asyncio.run(run())
    assert len(calls) == 2


def test_failure_clears_inflight_so_next_call_retries() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        if len(calls) == 1:
            return httpx.Response(500)
        return httpx.Response(200, json={"code": 200})

    cache, session = _cache(handler)

    async def run() -> None:
        with pytest.raises(NetworkError):
            await cache.get("/user/")
        assert session.inflight == {}
        assert await cache.get("/user/") == {"code": 200}

    asyncio.run(run())
    assert len(calls) == 2


def test_auth_change_isolates_cache_entries() -> None:
    calls: list[str] = []
    cache, session = _cache(_counting_handler(calls))

    async def run() -> None:
        await cache.get("/user/", ttl_seconds=30)
        session.set_auth(AuthConfig.clean(BASE, "key-b"))
        assert session.cache == {}
        await cache.get("/user/", ttl_seconds=30)

    asyncio.run(run())
    assert len(calls) == 2


def test_cache_keys_differ_per_identity() -> None:
    a = SessionContext(auth=AuthConfig.clean(BASE, "key-a"))
    b = SessionContext(auth=AuthConfig.clean(BASE, "key-b"))
    c = SessionContext(auth=AuthConfig.clean(BASE, dev_token="key-a"))
    keys = {s.cache_key("/user/") for s in (a, b, c)}
    assert len(keys) == 3


def test_result_from_previous_identity_is_not_cached() -> None:
    calls: list[str] = []
    cache, session = _cache(_counting_handler(calls, delay=0.02))

    async def run() -> None:
        pending = asyncio.ensure_future(cache.get("/user/", ttl_seconds=30))
        await asyncio.sleep(0)
        session.set_auth(AuthConfig.clean(BASE, "key-b"))
        await pending
        assert session.cache == {}

    asyncio.run(run())
