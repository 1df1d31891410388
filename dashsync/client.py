from __future__ import annotations

import logging
from typing import Any
from zoneinfo import ZoneInfo

import httpx

from dashsync.api_cache import RequestCache
from dashsync.classify import ComputeClassifier
from dashsync.income import IncomeSnapshotStore, daily_deltas, derive_income_metrics
from dashsync.kv_store import KeyValueStore
from dashsync.payload import JSONValue
from dashsync.renewals import RenewalScanner, RenewDueSet
from dashsync.request_log import RequestLog
from dashsync.requester import FailoverRequester
from dashsync.session import SessionContext
from dashsync.settings import AuthConfig, Settings, load_auth, save_auth
from dashsync.summary import CouponStore, ProductSummary, SummaryService, profile_metrics

logger = logging.getLogger(__name__)


class DashboardClient:
    """Wires the sync core together for one app process."""

    def __init__(
        self,
        settings: Settings,
        kv: KeyValueStore,
        *,
        http_client: httpx.AsyncClient | None = None,
        auth: AuthConfig | None = None,
    ) -> None:
        self.settings = settings
        self.kv = kv
        self.session = SessionContext(auth=auth or load_auth(kv, default_base_url=settings.base_url))
        self.request_log = RequestLog(kv)
        self.requester = FailoverRequester(
            self.session,
            default_base_url=settings.base_url,
            request_log=self.request_log,
            client=http_client,
            timeout_seconds=settings.http_timeout_seconds,
        )
        self.cache = RequestCache(
            self.requester,
            self.session,
            default_ttl_seconds=settings.default_ttl_seconds,
            dedup_forced=settings.dedup_forced,
        )
        self.income = IncomeSnapshotStore(kv, scope=self.session.auth.identity_key(), timezone=settings.timezone)
        self.requester.add_observer("GET", "/user/", self._observe_user)
        self.coupons = CouponStore(kv, self.session)
        self.summary = SummaryService(
            self.cache,
            self.session,
            coupons=self.coupons,
            classifier=ComputeClassifier(self.cache, self.session, concurrency=settings.classify_concurrency),
        )
        self.renewals = RenewalScanner(
            self.cache,
            self.session,
            self.summary.ensure,
            concurrency=settings.scan_concurrency,
            price_concurrency=settings.price_concurrency,
            tz=ZoneInfo(settings.timezone),
        )

    async def close(self) -> None:
        await self.requester.close()

    def _observe_user(self, payload: JSONValue) -> None:
        self.income.record(payload)

    @property
    def logged_in(self) -> bool:
        return self.session.auth.has_credentials

    def login(self, auth: AuthConfig) -> None:
        save_auth(self.kv, auth)
        self.session.set_auth(auth)
        self.income.scope = auth.identity_key()

    def logout(self) -> None:
        # Identity-scoped records go first, while the old identity is still active.
        self.income.clear()
        self.coupons.clear()
        auth = AuthConfig.clean(self.session.auth.base_url)
        save_auth(self.kv, auth)
        self.session.set_auth(auth)
        self.income.scope = auth.identity_key()
        logger.info("logged_out")

    async def refresh_summary(self, force: bool = False) -> ProductSummary:
        return await self.summary.refresh(force)

    async def profile(self) -> dict[str, Any]:
        await self.summary.ensure()
        return {
            "profile": self.session.user_profile or {},
            "metrics": profile_metrics(self.session.user_profile, self.session.raw_summary),
        }

    async def coupons_list(self, force: bool = False) -> list[Any]:
        return await self.summary.load_coupons(force)

    async def renew_due(self, *, max_days: int | None = None, with_price: bool = False, force: bool = False) -> RenewDueSet:
        days = self.settings.renew_max_days if max_days is None else max(0, int(max_days))
        if with_price:
            return await self.renewals.scan_due_with_prices(max_days=days, force=force)
        return await self.renewals.scan_due(max_days=days, force=force)

    def income_report(self) -> dict[str, Any]:
        cache = self.income.load()
        series = list(cache.series) if cache else []
        metrics = derive_income_metrics(self.session.user_profile or {})
        return {
            "mode": cache.income_mode if cache else "none",
            "updated_at": cache.updated_at if cache else None,
            "total_income": metrics.total_income,
            "month_income": metrics.month_income,
            "prev_month_income": metrics.prev_month_income,
            "mom_rate": metrics.mom_rate,
            "series": [s.model_dump(by_alias=True) for s in series],
            "deltas": [{"day": d, "income": v} for d, v in daily_deltas(series)],
        }
