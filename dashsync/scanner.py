from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, Mapping, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

logger = logging.getLogger(__name__)

PER_KIND_CAP = 30


@dataclass(frozen=True)
class ScanTask:
    kind: str
    id: str


def build_tasks(
    ids_by_kind: Mapping[str, Sequence[str]],
    kinds: Iterable[str],
    *,
    per_kind_cap: int = PER_KIND_CAP,
) -> list[ScanTask]:
    """Flatten kinds x ids, keeping only the first ``per_kind_cap`` ids of each kind."""
    tasks: list[ScanTask] = []
    for kind in kinds:
        ids = list(ids_by_kind.get(kind) or [])[: max(0, per_kind_cap)]
        tasks.extend(ScanTask(kind=kind, id=str(i)) for i in ids)
    return tasks


async def scan(
    items: Sequence[T],
    fetch_one: Callable[[T], Awaitable[R | None]],
    *,
    concurrency: int = 5,
) -> list[R]:
    """Run ``fetch_one`` over ``items`` with at most ``concurrency`` calls pending.

    Best effort: an item that raises or returns None contributes nothing, and
    never fails the batch. Results come back in completion order.
    """
    if not items:
        return []

    queue: asyncio.Queue[T] = asyncio.Queue()
    for item in items:
        queue.put_nowait(item)
    results: list[R] = []

    async def worker() -> None:
        while True:
            try:
                item = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                out = await fetch_one(item)
            except Exception as e:
                logger.debug("scan_item_failed item=%r error=%s", item, e)
                continue
            if out is not None:
                results.append(out)

    workers = min(max(1, concurrency), len(items))
    await asyncio.gather(*(worker() for _ in range(workers)))
    return results
