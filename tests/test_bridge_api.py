import importlib

import httpx
from fastapi.testclient import TestClient

BASE = "https://api.test"


def _handler(request: httpx.Request) -> httpx.Response:
    routes = {
        "/user/": {"code": 200, "data": {"Name": "alice", "ResellPointsAll": 200000}},
        "/user/coupons/": {"code": 200, "data": []},
        "/product/": {"code": 200, "data": {"domain": ["a.cn"]}},
    }
    body = routes.get(request.url.path)
    if body is None:
        return httpx.Response(404, json={"code": 404})
    return httpx.Response(200, json=body)


def _bridge(monkeypatch, tmp_path):
    monkeypatch.setenv("DS_DATA_DIR", str(tmp_path))
    monkeypatch.setenv("DS_BASE_URL", BASE)

    import dashsync.crypto_store as crypto_store

    monkeypatch.setattr(crypto_store, "KEY_PATH", tmp_path / "secret.key")

    import dashsync.main as main_mod
    from dashsync.client import DashboardClient

    importlib.reload(main_mod)
    http = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    main_mod.client = DashboardClient(main_mod.settings, main_mod.kv, http_client=http)
    return main_mod, TestClient(main_mod.app)


def test_summary_requires_login(monkeypatch, tmp_path) -> None:
    _, api = _bridge(monkeypatch, tmp_path)
    r = api.get("/api/summary")
    assert r.status_code == 401
    assert r.json()["login_required"] is True


def test_login_masks_credentials(monkeypatch, tmp_path) -> None:
    _, api = _bridge(monkeypatch, tmp_path)
    assert api.post("/api/auth", json={}).status_code == 400

    r = api.post("/api/auth", json={"api_key": "abcdefgh1234"})
    assert r.status_code == 200
    auth = r.json()["auth"]
    assert auth["mode"] == "apikey"
    assert auth["api_key"] == "********1234"
    assert auth["base_url"] == BASE
    assert "abcdefgh1234" not in (tmp_path / "auth.json").read_text(encoding="utf-8")


def test_summary_income_and_logout(monkeypatch, tmp_path) -> None:
    main_mod, api = _bridge(monkeypatch, tmp_path)
    api.post("/api/auth", json={"api_key": "k1"})

    r = api.get("/api/summary")
    assert r.status_code == 200
    assert r.json()["summary"]["domain"] == ["a.cn"]

    income = api.get("/api/income").json()
    assert income["mode"] == "points"
    assert income["total_income"] == 100
    assert len(income["series"]) == 1
    assert income["series"][0]["totalIncome"] == 100

    entries = api.get("/api/request-log").json()["entries"]
    assert any(e["path"] == "/product/" for e in entries)

    assert api.delete("/api/auth").status_code == 200
    assert main_mod.client.logged_in is False
    assert api.get("/api/income").json()["series"] == []
    assert api.get("/api/summary").status_code == 401


def test_boot_endpoints(monkeypatch, tmp_path) -> None:
    _, api = _bridge(monkeypatch, tmp_path)
    snap = api.get("/api/boot").json()
    assert snap["state"] == "running"
    assert 4 <= snap["progress"] <= 96
    assert api.post("/api/boot/ready").json()["ready"] is True


def test_startup_tasks_are_tracked_and_stopped(monkeypatch, tmp_path) -> None:
    main_mod, _ = _bridge(monkeypatch, tmp_path)
    with TestClient(main_mod.app) as api:
        assert main_mod._initial_task is not None
        assert main_mod._boot_task is not None
        assert api.get("/health").status_code == 200
    assert main_mod._initial_task is None
    assert main_mod._boot_task is None
