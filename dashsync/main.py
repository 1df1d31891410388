from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from dashsync.boot_pacer import BootPacer
from dashsync.client import DashboardClient
from dashsync.crypto_store import mask_secret
from dashsync.errors import AuthMissingError, NetworkError
from dashsync.kv_store import FileKeyValueStore
from dashsync.scheduler import start_scheduler
from dashsync.settings import AuthConfig, Settings, configure_logging, effective_settings_dict

settings = Settings.load()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI(title="Dashboard Sync Bridge")

kv = FileKeyValueStore(settings.data_dir)
client = DashboardClient(settings, kv)
boot = BootPacer(kv)
_ready = asyncio.Event()
_scheduler = None
_boot_task: asyncio.Task | None = None
_initial_task: asyncio.Task | None = None


class ApiLoginRequest(BaseModel):
    base_url: str | None = None
    api_key: str | None = None
    dev_token: str | None = None


@app.exception_handler(AuthMissingError)
async def _auth_missing_handler(request: Request, exc: AuthMissingError) -> JSONResponse:
    return JSONResponse({"ok": False, "error": str(exc), "login_required": True}, status_code=401)


@app.exception_handler(NetworkError)
async def _network_error_handler(request: Request, exc: NetworkError) -> JSONResponse:
    return JSONResponse({"ok": False, "error": str(exc), "path": exc.path}, status_code=502)


def _auth_view(auth: AuthConfig) -> dict:
    return {
        "base_url": auth.base_url,
        "mode": auth.mode,
        "api_key": mask_secret(auth.api_key),
        "dev_token": mask_secret(auth.dev_token),
    }


@app.get("/health")
async def health() -> dict:
    session = client.session
    return {
        "ok": True,
        "logged_in": client.logged_in,
        "summary_ready": session.summary is not None,
        "last_sync_at": session.last_sync_at.isoformat() if session.last_sync_at else None,
        "last_error": session.last_error,
        "settings": effective_settings_dict(settings),
    }


@app.post("/api/auth")
async def api_login(req: ApiLoginRequest) -> JSONResponse:
    auth = AuthConfig.clean(req.base_url or settings.base_url, req.api_key, req.dev_token)
    if not auth.has_credentials:
        return JSONResponse({"ok": False, "error": "api_key or dev_token required"}, status_code=400)
    client.login(auth)
    return JSONResponse({"ok": True, "auth": _auth_view(auth)})


@app.delete("/api/auth")
async def api_logout() -> JSONResponse:
    client.logout()
    return JSONResponse({"ok": True})


@app.get("/api/summary")
async def api_summary(force: bool = False) -> JSONResponse:
    summary = await client.refresh_summary(force=force)
    session = client.session
    return JSONResponse(
        {
            "ok": True,
            "source": session.summary_source,
            "summary": summary.as_dict(),
            "total": summary.total(),
            "coupons": len(session.coupons),
            "last_sync_at": session.last_sync_at.isoformat() if session.last_sync_at else None,
        }
    )


@app.get("/api/profile")
async def api_profile() -> JSONResponse:
    return JSONResponse({"ok": True, **(await client.profile())})


@app.get("/api/coupons")
async def api_coupons(force: bool = False) -> JSONResponse:
    items = await client.coupons_list(force=force)
    return JSONResponse({"ok": True, "items": items})


@app.get("/api/renewals")
async def api_renewals(max_days: int | None = None, with_price: bool = False, force: bool = False) -> JSONResponse:
    result = await client.renew_due(max_days=max_days, with_price=with_price, force=force)
    return JSONResponse(
        {
            "ok": True,
            "max_days": result.max_days,
            "fetched_at": result.fetched_at,
            "priced_at": result.priced_at,
            "rows": [{**asdict(r), "kind_label": r.kind_label} for r in result.rows],
        }
    )


@app.get("/api/income")
async def api_income() -> JSONResponse:
    return JSONResponse({"ok": True, **client.income_report()})


@app.get("/api/boot")
async def api_boot() -> JSONResponse:
    boot.tick()
    return JSONResponse(boot.snapshot())


@app.post("/api/boot/ready")
async def api_boot_ready() -> JSONResponse:
    _ready.set()
    boot.mark_ready()
    boot.tick()
    return JSONResponse(boot.snapshot())


@app.get("/api/request-log")
async def api_request_log() -> JSONResponse:
    return JSONResponse({"ok": True, "entries": [e.model_dump() for e in client.request_log.entries()]})


async def _initial_load() -> None:
    try:
        if client.logged_in:
            await client.refresh_summary(force=False)
    except (AuthMissingError, NetworkError) as e:
        logger.warning("initial_load_failed error=%s", e)
    finally:
        _ready.set()


@app.on_event("startup")
async def _startup() -> None:
    global _scheduler, _boot_task, _initial_task
    _scheduler = start_scheduler(client=client)
    _boot_task = asyncio.create_task(boot.run(_ready))
    _initial_task = asyncio.create_task(_initial_load())


@app.on_event("shutdown")
async def _shutdown() -> None:
    global _scheduler, _boot_task, _initial_task
    if _scheduler is not None:
        _scheduler.shutdown(wait=False)
        _scheduler = None
    for task in (_initial_task, _boot_task):
        if task is None:
            continue
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    _initial_task = None
    _boot_task = None
    await client.close()
