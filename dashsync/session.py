from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from dashsync.payload import JSONValue
from dashsync.settings import AuthConfig

if TYPE_CHECKING:
    from dashsync.renewals import RenewDueSet
    from dashsync.summary import ProductSummary


@dataclass(frozen=True)
class CacheEntry:
    key: str
    payload: JSONValue
    inserted_at: float


@dataclass
class SessionContext:
    """Everything the sync core shares for one signed-in identity.

    Created at app start, cleared whenever the credential changes or the user
    logs out. Components receive it explicitly instead of reaching for globals.
    """

    auth: AuthConfig = field(default_factory=AuthConfig)

    # Request cache: key -> entry, key -> pending GET.
    cache: dict[str, CacheEntry] = field(default_factory=dict)
    inflight: dict[str, asyncio.Task] = field(default_factory=dict)

    # Bumped on every auth change; tasks started under an older generation
    # must not write into the cache.
    generation: int = 0

    summary: ProductSummary | None = None
    summary_source: str = ""
    raw_summary: JSONValue = None
    user_profile: dict[str, Any] | None = None
    coupons: list[Any] = field(default_factory=list)
    last_sync_at: datetime | None = None
    last_error: str | None = None

    # rcs id -> "rcs" | "rgpu"
    compute_class: dict[str, str] = field(default_factory=dict)
    renew_due: RenewDueSet | None = None

    def cache_key(self, path: str) -> str:
        a = self.auth
        return f"{a.base_url.strip()}|{a.mode}|{a.credential}|{path}"

    def clear(self) -> None:
        self.cache.clear()
        self.inflight.clear()
        self.generation += 1
        self.summary = None
        self.summary_source = ""
        self.raw_summary = None
        self.user_profile = None
        self.coupons = []
        self.last_sync_at = None
        self.last_error = None
        self.compute_class.clear()
        self.renew_due = None

    def set_auth(self, auth: AuthConfig) -> None:
        self.auth = auth
        self.clear()
