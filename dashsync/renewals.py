from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from datetime import tzinfo
from typing import Any, Awaitable, Callable

from dashsync.api_cache import RequestCache
from dashsync.classify import DETAIL_TTL_SECONDS
from dashsync.errors import ItemFetchError
from dashsync.payload import (
    JSONValue,
    extract_payload_data,
    parse_expire,
    pick_by_alias,
    pick_first_field_deep,
    to_number_or_null,
    unwrap_detail,
)
from dashsync.scanner import ScanTask, build_tasks, scan
from dashsync.session import SessionContext
from dashsync.summary import ProductSummary

logger = logging.getLogger(__name__)

RENEW_KINDS = ("rcs", "rgpu", "rgs", "rca", "domain")
KIND_LABELS = {
    "rcs": "云服务器",
    "rgpu": "GPU 云服务器",
    "rgs": "游戏云",
    "rca": "云应用",
    "domain": "域名服务",
    "ssl_order": "SSL证书",
}

MAX_ROWS = 50
RENEW_TTL_SECONDS = 60.0
PRICED_TTL_SECONDS = 120.0

_NAME_ALIASES = ["name", "domain", "OsName", "HostName", "title", "domain_name"]
_STATUS_ALIASES = ["status", "Status", "state"]
_AUTO_RENEW_ALIASES = ["AutoRenew", "auto_renew", "expire_notice"]
_EXPIRE_ALIASES = ["ExpDate", "exp_date", "expired_at", "expire_at", "end_time", "due_time"]


def detail_path(kind: str, product_id: str) -> str:
    if kind in ("rcs", "rgpu"):
        return f"/product/rcs/{product_id}/"
    if kind == "rgs":
        return f"/product/rgs/{product_id}/"
    if kind == "rca":
        return f"/product/rca/project/{product_id}/"
    if kind == "domain":
        return f"/product/domain/{product_id}/"
    return ""


def price_path(kind: str, product_id: str) -> str:
    price_kind = "rcs" if kind == "rgpu" else kind
    return f"/product/{price_kind}/price?scene=renew&product_id={product_id}&duration=1"


@dataclass(frozen=True)
class RenewDueRow:
    kind: str
    id: str
    name: str
    status_text: str
    auto_renew_text: str
    expire_at: str
    days_text: str
    days: int
    renew_price: str = ""

    @property
    def kind_label(self) -> str:
        return KIND_LABELS.get(self.kind, self.kind)


@dataclass(frozen=True)
class RenewDueSet:
    rows: tuple[RenewDueRow, ...]
    fetched_at: float
    max_days: int
    priced_at: float | None = None

    def is_fresh(self, now: float, *, max_days: int) -> bool:
        return self.max_days == max_days and (now - self.fetched_at) < RENEW_TTL_SECONDS

    def all_priced(self) -> bool:
        return all(r.renew_price for r in self.rows)

    def is_priced_fresh(self, now: float, *, max_days: int) -> bool:
        if self.priced_at is None or self.max_days != max_days:
            return False
        return (now - self.priced_at) < PRICED_TTL_SECONDS and self.all_priced()


def _auto_renew_text(raw: Any) -> str:
    s = str(raw).strip().lower()
    return "已开启" if s in ("true", "1") else "未开启"


def build_renew_row(
    kind: str, product_id: str, payload: JSONValue, *, now: float, tz: tzinfo | None = None
) -> RenewDueRow | None:
    """Row for one product detail, or None when the expiry is missing or unparseable."""
    d = unwrap_detail(payload)
    exp = parse_expire(pick_first_field_deep(d, _EXPIRE_ALIASES), now=now, tz=tz)
    if exp.days is None:
        return None
    name = str(pick_by_alias(d, _NAME_ALIASES, f"{KIND_LABELS.get(kind, kind)} #{product_id}"))
    return RenewDueRow(
        kind=kind,
        id=str(product_id),
        name=name,
        status_text=str(pick_by_alias(d, _STATUS_ALIASES)),
        auto_renew_text=_auto_renew_text(pick_first_field_deep(d, _AUTO_RENEW_ALIASES)),
        expire_at=exp.text,
        days_text=exp.days_text,
        days=exp.days,
    )


def select_due(rows: list[RenewDueRow], *, max_days: int, limit: int = MAX_ROWS) -> tuple[RenewDueRow, ...]:
    due = [r for r in rows if 0 <= r.days <= max_days]
    due.sort(key=lambda r: (r.days, r.kind, r.id))
    return tuple(due[:limit])


def parse_renew_price(payload: JSONValue) -> str:
    d = extract_payload_data(payload)
    if not isinstance(d, dict):
        return ""
    detail = d.get("detail")
    per_scene = detail.get("per_scene") if isinstance(detail, dict) else None
    if isinstance(per_scene, dict) and per_scene.get("renew") is not None:
        value = per_scene.get("renew")
    else:
        value = pick_first_field_deep(d, ["price", "renew"])
    n = to_number_or_null(value)
    return "" if n is None else f"¥ {n:.2f}"


class RenewalScanner:
    """Finds products expiring within ``max_days`` and optionally prices their renewal."""

    def __init__(
        self,
        cache: RequestCache,
        session: SessionContext,
        summary_provider: Callable[[], Awaitable[ProductSummary]],
        *,
        concurrency: int = 5,
        price_concurrency: int = 3,
        clock: Callable[[], float] = time.time,
        tz: tzinfo | None = None,
    ) -> None:
        self._cache = cache
        self._session = session
        self._summary_provider = summary_provider
        self.concurrency = max(1, concurrency)
        self.price_concurrency = max(1, price_concurrency)
        self._clock = clock
        self._tz = tz

    async def _fetch_row(self, task: ScanTask) -> RenewDueRow | None:
        path = detail_path(task.kind, task.id)
        if not path:
            return None
        payload = await self._cache.get(path, ttl_seconds=DETAIL_TTL_SECONDS)
        row = build_renew_row(task.kind, task.id, payload, now=self._clock(), tz=self._tz)
        if row is None:
            raise ItemFetchError(task.kind, task.id, "missing expiry")
        return row

    async def scan_due(self, *, max_days: int = 7, force: bool = False) -> RenewDueSet:
        current = self._session.renew_due
        if not force and current is not None and current.is_fresh(self._clock(), max_days=max_days):
            return current

        summary = await self._summary_provider()
        tasks = build_tasks(summary.ids, RENEW_KINDS)
        rows = await scan(tasks, self._fetch_row, concurrency=self.concurrency)
        result = RenewDueSet(rows=select_due(rows, max_days=max_days), fetched_at=self._clock(), max_days=max_days)
        self._session.renew_due = result
        logger.info("renew_scan_done tasks=%d due=%d max_days=%d", len(tasks), len(result.rows), max_days)
        return result

    async def _fetch_price(self, row: RenewDueRow) -> tuple[tuple[str, str], str] | None:
        payload = await self._cache.get(price_path(row.kind, row.id), ttl_seconds=PRICED_TTL_SECONDS)
        price = parse_renew_price(payload)
        if not price:
            return None
        return (row.kind, row.id), price

    async def scan_due_with_prices(self, *, max_days: int = 7, force: bool = False) -> RenewDueSet:
        current = self._session.renew_due
        if not force and current is not None and current.is_priced_fresh(self._clock(), max_days=max_days):
            return current

        base = await self.scan_due(max_days=max_days, force=force)
        unpriced = [r for r in base.rows if not r.renew_price]
        prices = dict(await scan(unpriced, self._fetch_price, concurrency=self.price_concurrency))
        rows = tuple(
            replace(r, renew_price=prices[(r.kind, r.id)]) if (r.kind, r.id) in prices else r for r in base.rows
        )
        result = replace(base, rows=rows, priced_at=self._clock())
        self._session.renew_due = result
        logger.info("renew_price_done priced=%d missing=%d", len(prices), len(unpriced) - len(prices))
        return result
