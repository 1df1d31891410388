from __future__ import annotations

import asyncio
import enum
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from dashsync.kv_store import KeyValueStore, load_record, save_record

logger = logging.getLogger(__name__)

BOOT_METRICS_KEY = "boot-metrics"

MIN_MS = 800.0
MAX_MS = 20000.0
FALLBACK_MS = 2600.0
ALPHA = 0.35
EASE_POWER = 2.2
FLOOR_PCT = 4
SOFT_CAP_PCT = 96
MIN_VISIBLE_MS = 600.0
FADE_OUT_MS = 220.0
TICK_SECONDS = 0.12


def _clamp(v: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, v))


class BootMetrics(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ema_ms: float = Field(FALLBACK_MS, alias="emaMs")
    samples: int = Field(0, ge=0)
    last_ms: float = Field(0.0, alias="lastMs")
    at: str = ""


def read_boot_metrics(kv: KeyValueStore) -> BootMetrics:
    return load_record(kv, BOOT_METRICS_KEY, BootMetrics) or BootMetrics()


def write_boot_metrics(kv: KeyValueStore, elapsed_ms: float) -> BootMetrics:
    prev = read_boot_metrics(kv)
    sample = _clamp(float(elapsed_ms), MIN_MS, MAX_MS)
    if prev.samples <= 0:
        ema = sample
    else:
        ema = ALPHA * sample + (1.0 - ALPHA) * prev.ema_ms
    metrics = BootMetrics(
        ema_ms=round(_clamp(ema, MIN_MS, MAX_MS), 3),
        samples=prev.samples + 1,
        last_ms=float(elapsed_ms),
        at=datetime.now(timezone.utc).isoformat(),
    )
    save_record(kv, BOOT_METRICS_KEY, metrics)
    return metrics


def expected_boot_ms(kv: KeyValueStore) -> float:
    m = read_boot_metrics(kv)
    if m.samples <= 0:
        return FALLBACK_MS
    return _clamp(m.ema_ms, MIN_MS, MAX_MS)


class BootState(str, enum.Enum):
    RUNNING = "running"
    CLOSING = "closing"
    CLOSED = "closed"


class BootPacer:
    """Monotonic startup progress paced by how long previous boots took.

    RUNNING eases toward a 96% soft cap over the expected duration. Once the
    ready signal has arrived and the minimum visible time has passed, progress
    pins to 100, the elapsed time is folded into the moving average, and the
    pacer moves to CLOSING and then CLOSED after the fade-out.
    """

    def __init__(self, kv: KeyValueStore, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._kv = kv
        self._clock = clock
        self.expected_ms = expected_boot_ms(kv)
        self.started_at = clock()
        self.progress = FLOOR_PCT
        self.state = BootState.RUNNING
        self.ready = False
        self.closing_at: float | None = None
        self.recorded: BootMetrics | None = None

    def elapsed_ms(self) -> float:
        return (self._clock() - self.started_at) * 1000.0

    def mark_ready(self) -> None:
        self.ready = True

    def target(self, elapsed_ms: float) -> int:
        ratio = _clamp(elapsed_ms / self.expected_ms, 0.0, 1.0)
        eased = 1.0 - (1.0 - ratio) ** EASE_POWER
        return int(round(FLOOR_PCT + (SOFT_CAP_PCT - FLOOR_PCT) * eased))

    def tick(self) -> int:
        if self.state is BootState.CLOSED:
            return self.progress
        now = self._clock()
        if self.state is BootState.CLOSING:
            if self.closing_at is not None and (now - self.closing_at) * 1000.0 >= FADE_OUT_MS:
                self.state = BootState.CLOSED
            return self.progress

        elapsed = (now - self.started_at) * 1000.0
        if self.ready and elapsed >= MIN_VISIBLE_MS:
            self.progress = 100
            self.state = BootState.CLOSING
            self.closing_at = now
            self.recorded = write_boot_metrics(self._kv, elapsed)
            logger.info("boot_finished elapsed_ms=%.0f expected_ms=%.0f ema_ms=%.0f", elapsed, self.expected_ms, self.recorded.ema_ms)
            return self.progress

        self.progress = max(self.progress, min(self.target(elapsed), SOFT_CAP_PCT))
        return self.progress

    async def run(self, ready: asyncio.Event, *, interval: float = TICK_SECONDS) -> BootMetrics | None:
        while self.state is not BootState.CLOSED:
            if ready.is_set():
                self.mark_ready()
            self.tick()
            await asyncio.sleep(interval)
        return self.recorded

    def snapshot(self) -> dict:
        return {
            "state": self.state.value,
            "progress": self.progress,
            "expected_ms": self.expected_ms,
            "elapsed_ms": round(self.elapsed_ms(), 1),
            "ready": self.ready,
        }
