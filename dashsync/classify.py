from __future__ import annotations

import json
import logging
import re
from typing import Any

from dashsync.api_cache import RequestCache
from dashsync.errors import DashSyncError
from dashsync.payload import pick_first_field_deep, unwrap_detail
from dashsync.scanner import build_tasks, scan, ScanTask
from dashsync.session import SessionContext

logger = logging.getLogger(__name__)

DETAIL_TTL_SECONDS = 30.0

# Known accelerator model substrings as they show up in plan/node/OS descriptors.
ACCELERATOR_PATTERN = re.compile(
    r"gpu|显卡|rtx|gtx|tesla|quadro|titan|"
    r"\b(?:a10|a16|a30|a40|a100|a800|h100|h800|h20|l4|l20|l40s?|t4|p4|p40|p100|v100)\b|"
    r"\b(?:2080|3060|3070|3080|3090|4060|4070|4080|4090|5090)\b|"
    r"radeon|instinct|\bmi(?:50|100|210|250|300x?)\b",
    re.IGNORECASE,
)

_DESCRIPTOR_ALIASES: tuple[tuple[str, ...], ...] = (
    ("OsName", "os_name", "os"),
    ("HostName", "hostname", "host_name"),
    ("PlanName", "plan_name", "Plan", "plan"),
    ("NodeName", "node_name", "Node", "node", "ChineseName", "Zone", "region"),
    ("GPU", "gpu", "GpuName", "gpu_name", "Card", "card"),
)


def _as_text(value: Any) -> str:
    if value is None or value == "":
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def describe_instance(detail: dict[str, Any]) -> str:
    parts = [_as_text(pick_first_field_deep(detail, aliases)) for aliases in _DESCRIPTOR_ALIASES]
    return " ".join(p for p in parts if p)


def is_accelerator_instance(detail: dict[str, Any]) -> bool:
    return bool(ACCELERATOR_PATTERN.search(describe_instance(detail)))


class ComputeClassifier:
    """Moves accelerator-backed compute instances from ``rcs`` into ``rgpu``.

    Verdicts are memoized in the session per id. A failed detail fetch keeps the
    id in ``rcs`` for this pass and is retried on the next one.
    """

    def __init__(self, cache: RequestCache, session: SessionContext, *, concurrency: int = 4) -> None:
        self._cache = cache
        self._session = session
        self.concurrency = max(1, concurrency)

    async def _classify_one(self, task: ScanTask) -> tuple[str, str, bool]:
        try:
            payload = await self._cache.get(f"/product/rcs/{task.id}/", ttl_seconds=DETAIL_TTL_SECONDS)
        except DashSyncError as e:
            logger.debug("classify_fetch_failed id=%s error=%s", task.id, e)
            return task.id, "rcs", False
        return task.id, ("rgpu" if is_accelerator_instance(unwrap_detail(payload)) else "rcs"), True

    async def split(self, ids_by_kind: dict[str, list[str]]) -> dict[str, list[str]]:
        rcs_ids = list(ids_by_kind.get("rcs") or [])
        known = self._session.compute_class
        generation = self._session.generation
        pending = [t for t in build_tasks({"rcs": rcs_ids}, ["rcs"]) if t.id not in known]
        verdicts: dict[str, str] = {}
        for pid, cls, ok in await scan(pending, self._classify_one, concurrency=self.concurrency):
            verdicts[pid] = cls
            if ok and self._session.generation == generation:
                known[pid] = cls

        def cls_of(pid: str) -> str:
            return known.get(pid) or verdicts.get(pid) or "rcs"

        out = dict(ids_by_kind)
        out["rcs"] = [i for i in rcs_ids if cls_of(i) != "rgpu"]
        gpu = list(ids_by_kind.get("rgpu") or [])
        gpu.extend(i for i in rcs_ids if cls_of(i) == "rgpu" and i not in gpu)
        out["rgpu"] = gpu
        if gpu:
            logger.info("compute_classified rcs=%d rgpu=%d", len(out["rcs"]), len(gpu))
        return out
