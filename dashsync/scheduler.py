from __future__ import annotations

import logging
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from dashsync.client import DashboardClient
from dashsync.errors import DashSyncError

logger = logging.getLogger(__name__)


async def background_refresh(*, client: DashboardClient) -> None:
    """Polls the summary (and with it ``/user/``) so income snapshots keep accruing.

    There is no push channel upstream, so this is the only way days without UI
    activity still get a bucket.
    """
    if not client.logged_in:
        return
    try:
        await client.refresh_summary(force=False)
        # Non-forced refresh is a no-op once loaded; re-read the profile through the cache.
        await client.cache.get("/user/", ttl_seconds=15.0)
    except DashSyncError as e:
        logger.warning("background_refresh_failed error=%s", e)


def start_scheduler(*, client: DashboardClient) -> AsyncIOScheduler:
    settings = client.settings
    scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.timezone))
    scheduler.add_job(
        background_refresh,
        trigger="interval",
        seconds=settings.refresh_interval_seconds,
        kwargs={"client": client},
        id="background_refresh",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.start()
    return scheduler
