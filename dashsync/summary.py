from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from dashsync.api_cache import RequestCache
from dashsync.classify import ComputeClassifier
from dashsync.errors import AuthMissingError, NetworkError
from dashsync.kv_store import KeyValueStore, load_record, save_record
from dashsync.payload import (
    JSONValue,
    extract_payload_data,
    format_count,
    format_money,
    pick_by_alias,
    pick_first_field_deep,
)
from dashsync.session import SessionContext

logger = logging.getLogger(__name__)

SUMMARY_KINDS = ("domain", "rca", "rcs", "rgs", "ssl_order")
USER_TTL_SECONDS = 15.0
COUPON_TTL_SECONDS = 10.0
PRODUCT_TTL_SECONDS = 10.0


@dataclass(frozen=True)
class ProductSummary:
    ids: dict[str, list[str]] = field(default_factory=dict)

    def get(self, kind: str) -> list[str]:
        return list(self.ids.get(kind) or [])

    def is_empty(self) -> bool:
        return not any(self.ids.get(k) for k in self.ids)

    def total(self) -> int:
        return sum(len(v) for v in self.ids.values())

    def as_dict(self) -> dict[str, list[str]]:
        return {k: list(v) for k, v in self.ids.items()}


def normalize_summary(payload: JSONValue) -> ProductSummary:
    data = payload.get("data") if isinstance(payload, dict) else None
    if not isinstance(data, dict):
        data = {}

    def id_list(v: Any) -> list[str]:
        return [str(x) for x in v] if isinstance(v, list) else []

    ids = {kind: id_list(data.get(kind)) for kind in SUMMARY_KINDS}
    ids["rgpu"] = id_list(data.get("rgpu"))
    return ProductSummary(ids=ids)


def profile_metrics(profile: dict[str, Any] | None, raw_summary: JSONValue = None) -> dict[str, str]:
    profile = profile or {}
    raw = extract_payload_data(raw_summary) if raw_summary is not None else {}

    def lookup(aliases: list[str]) -> Any:
        return pick_first_field_deep(profile, aliases) or pick_first_field_deep(raw, aliases)

    return {
        "name": str(pick_by_alias(profile, ["Name", "nickname", "username", "name", "user_name"])),
        "balance": format_money(lookup(["Money", "balance", "money", "amount", "wallet", "credit", "user_money", "cash"])),
        "points": format_count(lookup(["Points", "points", "point", "score", "integral", "credit_point", "reward_points"])),
        "month_cost": format_money(
            lookup(["ConsumeMonthly", "consume_monthly", "month_cost", "month_consume", "month_pay", "month_spend"])
        ),
    }


class CouponCache(BaseModel):
    at: float = Field(..., ge=0)
    items: list[Any] = Field(default_factory=list)


class CouponStore:
    """Last known coupon list per auth identity, used when the live read fails."""

    def __init__(self, kv: KeyValueStore, session: SessionContext) -> None:
        self._kv = kv
        self._session = session

    def key(self) -> str:
        return f"coupon-cache:{self._session.auth.identity_key()}"

    def load(self) -> CouponCache | None:
        return load_record(self._kv, self.key(), CouponCache)

    def save(self, items: list[Any]) -> None:
        save_record(self._kv, self.key(), CouponCache(at=time.time(), items=items))

    def clear(self) -> None:
        self._kv.delete(self.key())


class SummaryService:
    def __init__(
        self,
        cache: RequestCache,
        session: SessionContext,
        *,
        coupons: CouponStore,
        classifier: ComputeClassifier | None = None,
    ) -> None:
        self._cache = cache
        self._session = session
        self._coupons = coupons
        self._classifier = classifier
        # Pending load and the session generation it was started under.
        self._inflight: tuple[asyncio.Task, int] | None = None

    async def refresh(self, force: bool = False) -> ProductSummary:
        session = self._session
        if not session.auth.has_credentials:
            raise AuthMissingError("login required")
        if not force and session.summary is not None and session.user_profile is not None:
            return session.summary
        pending = self._inflight
        if pending is not None and pending[1] == session.generation:
            return await asyncio.shield(pending[0])
        if force:
            self._cache.invalidate()

        entry = (asyncio.ensure_future(self._load(force)), session.generation)
        self._inflight = entry
        try:
            return await asyncio.shield(entry[0])
        finally:
            if self._inflight is entry:
                self._inflight = None

    async def ensure(self) -> ProductSummary:
        return await self.refresh(False)

    async def load_coupons(self, force: bool = False) -> list[Any]:
        try:
            payload = await self._cache.get("/user/coupons/", force=force, ttl_seconds=COUPON_TTL_SECONDS)
        except NetworkError as e:
            logger.warning("user_coupons_load_error error=%s", e)
            cached = self._coupons.load()
            items = list(cached.items) if cached else []
        else:
            items = self._coupon_items(payload)
        self._session.coupons = items
        return items

    def _coupon_items(self, payload: JSONValue) -> list[Any]:
        data = extract_payload_data(payload)
        items = list(data) if isinstance(data, list) else []
        self._coupons.save(items)
        return items

    async def _reload_after_auth_change(self, force: bool) -> ProductSummary:
        # Results of the previous identity are dropped; load again for the current one.
        logger.info("summary_load_restarted reason=auth_changed")
        if not self._session.auth.has_credentials:
            raise AuthMissingError("login required")
        return await self._load(force)

    async def _load(self, force: bool) -> ProductSummary:
        session = self._session
        generation = session.generation
        user_res, coupon_res, product_res = await asyncio.gather(
            self._cache.get("/user/", force=force, ttl_seconds=USER_TTL_SECONDS),
            self._cache.get("/user/coupons/", force=force, ttl_seconds=COUPON_TTL_SECONDS),
            self._cache.get("/product/", force=force, ttl_seconds=PRODUCT_TTL_SECONDS),
            return_exceptions=True,
        )

        if session.generation != generation:
            return await self._reload_after_auth_change(force)

        if isinstance(product_res, BaseException):
            session.last_error = f"{type(product_res).__name__}: {product_res}"
            logger.error("summary_load_error error=%s", product_res)
            raise product_res

        summary = normalize_summary(product_res)
        source = "/product/"
        raw_summary: JSONValue = product_res
        if summary.is_empty():
            try:
                fallback = await self._cache.get("/product/id_list", force=force, ttl_seconds=PRODUCT_TTL_SECONDS)
            except NetworkError as e:
                logger.warning("summary_fallback_error error=%s", e)
            else:
                s2 = normalize_summary(fallback)
                if not s2.is_empty():
                    summary, source, raw_summary = s2, "/product/id_list", fallback

        if self._classifier is not None and summary.get("rcs"):
            summary = ProductSummary(ids=await self._classifier.split(summary.as_dict()))

        if session.generation != generation:
            return await self._reload_after_auth_change(force)

        if isinstance(user_res, BaseException):
            logger.warning("user_profile_load_error error=%s", user_res)
        else:
            data = user_res.get("data") if isinstance(user_res, dict) else None
            session.user_profile = data if isinstance(data, dict) else (user_res if isinstance(user_res, dict) else {})

        if isinstance(coupon_res, BaseException):
            logger.warning("user_coupons_load_error error=%s", coupon_res)
            cached = self._coupons.load()
            session.coupons = list(cached.items) if cached else []
        else:
            session.coupons = self._coupon_items(coupon_res)

        session.summary = summary
        session.summary_source = source
        session.raw_summary = raw_summary
        session.last_sync_at = datetime.now()
        session.last_error = None
        if summary.is_empty():
            logger.info("summary_empty source=%s", source)
        return summary
