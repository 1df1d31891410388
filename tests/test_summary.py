import asyncio

import httpx
import pytest

from dashsync.api_cache import RequestCache
from dashsync.classify import ComputeClassifier
from dashsync.errors import AuthMissingError, NetworkError
from dashsync.kv_store import MemoryKeyValueStore
from dashsync.requester import FailoverRequester
from dashsync.session import SessionContext
from dashsync.settings import AuthConfig
from dashsync.summary import CouponStore, SummaryService, normalize_summary, profile_metrics

BASE = "https://api.test"


def _service(routes: dict, calls: dict[str, int], *, auth: AuthConfig | None = None, handler=None):
    def _route_handler(request: httpx.Request) -> httpx.Response:
        path = request.url.path
        calls[path] = calls.get(path, 0) + 1
        body = routes.get(path)
        if body is None:
            return httpx.Response(500, json={"code": 500})
        return httpx.Response(200, json=body)

    session = SessionContext(auth=auth or AuthConfig.clean(BASE, "k"))
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler or _route_handler))
    cache = RequestCache(FailoverRequester(session, default_base_url=BASE, client=client), session)
    coupons = CouponStore(MemoryKeyValueStore(), session)
    service = SummaryService(cache, session, coupons=coupons, classifier=ComputeClassifier(cache, session))
    return service, session, coupons


def _routes(**overrides) -> dict:
    routes = {
        "/user/": {"code": 200, "data": {"Name": "alice", "Money": 12.3, "Points": 4500}},
        "/user/coupons/": {"code": 200, "data": [{"id": 1}]},
        "/product/": {"code": 200, "data": {"rcs": [11], "domain": ["a.cn"], "ConsumeMonthly": 99}},
        "/product/rcs/11/": {"code": 200, "data": {"Data": {"OsName": "Ubuntu"}}},
    }
    routes.update(overrides)
    return {k: v for k, v in routes.items() if v is not None}


def test_normalize_summary_fills_all_kinds() -> None:
    s = normalize_summary({"data": {"rcs": [1, "2"], "rgs": "bad"}})
    assert s.get("rcs") == ["1", "2"]
    assert s.get("rgs") == []
    assert s.get("rgpu") == []
    assert s.total() == 2
    assert normalize_summary(None).is_empty()


def test_refresh_populates_session() -> None:
    calls: dict[str, int] = {}
    service, session, _ = _service(_routes(), calls)

    summary = asyncio.run(service.refresh())
    assert summary.get("rcs") == ["11"]
    assert summary.get("domain") == ["a.cn"]
    assert session.summary_source == "/product/"
    assert session.user_profile == {"Name": "alice", "Money": 12.3, "Points": 4500}
    assert session.coupons == [{"id": 1}]
    assert session.last_sync_at is not None

    metrics = profile_metrics(session.user_profile, session.raw_summary)
    assert metrics["name"] == "alice"
    assert metrics["month_cost"] != "-"


def test_loaded_summary_is_reused_until_forced() -> None:
    calls: dict[str, int] = {}
    service, _, _ = _service(_routes(), calls)

    async def scenario():
        await service.refresh()
        await service.ensure()
        await service.refresh(force=True)

    asyncio.run(scenario())
    assert calls["/product/"] == 2


def test_concurrent_refreshes_share_one_load() -> None:
    calls: dict[str, int] = {}
    service, _, _ = _service(_routes(), calls)

    async def scenario():
        return await asyncio.gather(service.refresh(), service.refresh())

    a, b = asyncio.run(scenario())
    assert a == b
    assert calls["/product/"] == 1


def test_empty_summary_falls_back_to_id_list() -> None:
    calls: dict[str, int] = {}
    routes = _routes(**{"/product/": {"code": 200, "data": {}}, "/product/id_list": {"code": 200, "data": {"rgs": [5]}}})
    service, session, _ = _service(routes, calls)

    summary = asyncio.run(service.refresh())
    assert summary.get("rgs") == ["5"]
    assert session.summary_source == "/product/id_list"


def test_accelerator_instances_move_to_rgpu() -> None:
    calls: dict[str, int] = {}
    routes = _routes(**{"/product/rcs/11/": {"code": 200, "data": {"Data": {"PlanName": "RTX 4090"}}}})
    service, _, _ = _service(routes, calls)

    summary = asyncio.run(service.refresh())
    assert summary.get("rcs") == []
    assert summary.get("rgpu") == ["11"]


def test_product_failure_raises() -> None:
    calls: dict[str, int] = {}
    service, session, _ = _service(_routes(**{"/product/": None}), calls)

    with pytest.raises(NetworkError):
        asyncio.run(service.refresh())
    assert session.summary is None
    assert session.last_error


def test_profile_failure_is_tolerated() -> None:
    calls: dict[str, int] = {}
    service, session, _ = _service(_routes(**{"/user/": None}), calls)

    summary = asyncio.run(service.refresh())
    assert summary.get("domain") == ["a.cn"]
    assert session.user_profile is None


def test_coupons_fall_back_to_last_known_list() -> None:
    calls: dict[str, int] = {}
    service, session, coupons = _service(_routes(**{"/user/coupons/": None}), calls)
    coupons.save([{"id": "old"}])

    asyncio.run(service.refresh())
    assert session.coupons == [{"id": "old"}]
    assert asyncio.run(service.load_coupons(force=True)) == [{"id": "old"}]


def test_refresh_requires_credentials() -> None:
    calls: dict[str, int] = {}
    service, _, _ = _service(_routes(), calls, auth=AuthConfig.clean(BASE))

    with pytest.raises(AuthMissingError):
        asyncio.run(service.refresh())
    assert calls == {}


def test_refresh_after_account_switch_never_returns_previous_ids() -> None:
    gate = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        key = request.headers.get("x-api-key")
        path = request.url.path
        if path == "/product/":
            if key == "key-a":
                await gate.wait()
                return httpx.Response(200, json={"code": 200, "data": {"domain": ["A-SECRET"]}})
            return httpx.Response(200, json={"code": 200, "data": {"domain": ["B-1"]}})
        if path == "/user/":
            return httpx.Response(200, json={"code": 200, "data": {"Name": key}})
        return httpx.Response(200, json={"code": 200, "data": []})

    service, session, _ = _service({}, {}, auth=AuthConfig.clean(BASE, "key-a"), handler=handler)

    async def scenario():
        first = asyncio.ensure_future(service.refresh())
        await asyncio.sleep(0.01)
        session.set_auth(AuthConfig.clean(BASE, "key-b"))
        second = asyncio.ensure_future(service.refresh())
        await asyncio.sleep(0.01)
        gate.set()
        return await first, await second

    first, second = asyncio.run(scenario())
    assert second.get("domain") == ["B-1"]
    assert first.get("domain") == ["B-1"]
    assert session.summary is not None
    assert session.summary.get("domain") == ["B-1"]
    assert session.user_profile == {"Name": "key-b"}


def test_classification_from_previous_account_is_not_memoized() -> None:
    gate = asyncio.Event()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/product/rcs/7/":
            await gate.wait()
            return httpx.Response(200, json={"code": 200, "data": {"Data": {"PlanName": "RTX 4090"}}})
        return httpx.Response(404, json={"code": 404})

    service, session, _ = _service({}, {}, auth=AuthConfig.clean(BASE, "key-a"), handler=handler)
    classifier = ComputeClassifier(service._cache, session)

    async def scenario():
        pending = asyncio.ensure_future(classifier.split({"rcs": ["7"]}))
        await asyncio.sleep(0.01)
        session.set_auth(AuthConfig.clean(BASE, "key-b"))
        gate.set()
        await pending

    asyncio.run(scenario())
    assert session.compute_class == {}
