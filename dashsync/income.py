"""Day-bucketed promotion income derived from the cumulative counter on ``/user/``.

The API only exposes "total so far", so each observation is merged into a
per-day bucket holding the highest total seen that day. A day's income is the
difference between its bucket and the previous calendar day's bucket.

Known limitation: the max-merge assumes the upstream total never legitimately
decreases. A refund or chargeback that lowers it is masked until the next day.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Literal
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from dashsync.kv_store import KeyValueStore, load_record
from dashsync.payload import JSONValue, pick_first_field_deep, to_number_or_null

logger = logging.getLogger(__name__)

POINTS_PER_YUAN = 2000.0
MAX_SERIES = 180
SNAPSHOT_KEY_PREFIX = "daily-snapshots"

IncomeMode = Literal["points", "money", "none"]

_TOTAL_POINTS_ALIASES = ["ResellPointsAll", "resell_points_all"]
_MONTH_POINTS_ALIASES = ["ResellPointsMonthly", "resell_points_monthly"]
_TOTAL_MONEY_ALIASES = ["ResellAll", "resell_all", "total_income", "total_profit", "promotion_total_income"]
_MONTH_MONEY_ALIASES = ["ResellMonthly", "resell_monthly", "month_income", "month_profit", "promotion_month_income"]
_PREV_MONTH_ALIASES = ["ResellBeforeMonth", "resell_before_month"]


@dataclass(frozen=True)
class IncomeMetrics:
    mode: IncomeMode
    total_income: float | None
    month_income: float | None
    prev_month_income: float | None

    @property
    def mom_rate(self) -> float | None:
        if self.month_income is None or not self.prev_month_income:
            return None
        return (self.month_income - self.prev_month_income) / self.prev_month_income * 100.0


def _profile_of(payload: JSONValue) -> dict[str, Any]:
    if isinstance(payload, dict):
        data = payload.get("data")
        return data if isinstance(data, dict) else payload
    return {}


def derive_income_metrics(user_payload: JSONValue) -> IncomeMetrics:
    """Points accounting wins whenever any points field is present at all."""
    p = _profile_of(user_payload)
    total_points = to_number_or_null(pick_first_field_deep(p, _TOTAL_POINTS_ALIASES))
    month_points = to_number_or_null(pick_first_field_deep(p, _MONTH_POINTS_ALIASES))
    prev_month = to_number_or_null(pick_first_field_deep(p, _PREV_MONTH_ALIASES))

    if total_points is not None or month_points is not None:
        return IncomeMetrics(
            mode="points",
            total_income=None if total_points is None else total_points / POINTS_PER_YUAN,
            month_income=None if month_points is None else month_points / POINTS_PER_YUAN,
            prev_month_income=prev_month,
        )

    total = to_number_or_null(pick_first_field_deep(p, _TOTAL_MONEY_ALIASES))
    month = to_number_or_null(pick_first_field_deep(p, _MONTH_MONEY_ALIASES))
    if total is None and month is None:
        return IncomeMetrics(mode="none", total_income=None, month_income=None, prev_month_income=prev_month)
    return IncomeMetrics(mode="money", total_income=total, month_income=month, prev_month_income=prev_month)


class DailySnapshot(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day: str
    total_income: float = Field(..., alias="totalIncome")
    last_seen_at: str = Field(..., alias="lastSeenAt")


class DailySnapshotCache(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    updated_at: str = Field("", alias="updatedAt")
    income_mode: IncomeMode = Field("none", alias="incomeMode")
    series: list[DailySnapshot] = Field(default_factory=list)


def merge_observation(
    cache: DailySnapshotCache | None,
    *,
    mode: IncomeMode,
    total_income: float,
    day: str,
    seen_at: str,
    max_entries: int = MAX_SERIES,
) -> DailySnapshotCache | None:
    """Return the merged cache, or None when the observation changes nothing."""
    if cache is None or cache.income_mode != mode:
        series: list[DailySnapshot] = []
    else:
        series = [s.model_copy() for s in cache.series]

    existing = next((s for s in series if s.day == day), None)
    if existing is not None:
        if total_income <= existing.total_income:
            return None
        existing.total_income = total_income
        existing.last_seen_at = seen_at
    else:
        series.append(DailySnapshot(day=day, total_income=total_income, last_seen_at=seen_at))
        series.sort(key=lambda s: s.day)

    if len(series) > max_entries:
        series = series[-max_entries:]
    return DailySnapshotCache(updated_at=seen_at, income_mode=mode, series=series)


def daily_deltas(series: list[DailySnapshot]) -> list[tuple[str, float | None]]:
    """Per-day income; None where the previous calendar day has no bucket."""
    by_day = {s.day: s.total_income for s in series}
    out: list[tuple[str, float | None]] = []
    for s in sorted(series, key=lambda x: x.day):
        prev_day = (date.fromisoformat(s.day) - timedelta(days=1)).isoformat()
        prev = by_day.get(prev_day)
        out.append((s.day, None if prev is None else round(s.total_income - prev, 6)))
    return out


class IncomeSnapshotStore:
    def __init__(
        self,
        kv: KeyValueStore,
        *,
        scope: str = "",
        timezone: str = "Asia/Shanghai",
        max_entries: int = MAX_SERIES,
    ) -> None:
        self._kv = kv
        self.scope = scope
        self._tz = ZoneInfo(timezone)
        self.max_entries = max(1, max_entries)

    @property
    def key(self) -> str:
        return f"{SNAPSHOT_KEY_PREFIX}:{self.scope}" if self.scope else SNAPSHOT_KEY_PREFIX

    def load(self) -> DailySnapshotCache | None:
        return load_record(self._kv, self.key, DailySnapshotCache)

    def read_series(self) -> list[DailySnapshot]:
        cache = self.load()
        return list(cache.series) if cache else []

    def record(self, user_payload: JSONValue, *, now: datetime | None = None) -> DailySnapshotCache | None:
        metrics = derive_income_metrics(user_payload)
        if metrics.mode == "none" or metrics.total_income is None:
            return None
        now = (now or datetime.now(tz=self._tz)).astimezone(self._tz)
        previous = self.load()
        merged = merge_observation(
            previous,
            mode=metrics.mode,
            total_income=metrics.total_income,
            day=now.date().isoformat(),
            seen_at=now.isoformat(),
            max_entries=self.max_entries,
        )
        if merged is None:
            return previous
        if previous is not None and previous.income_mode != metrics.mode:
            logger.info("income_mode_changed from=%s to=%s series_reset=1", previous.income_mode, metrics.mode)
        self._kv.set(self.key, merged.model_dump_json(by_alias=True))
        return merged

    def clear(self) -> None:
        self._kv.delete(self.key)
