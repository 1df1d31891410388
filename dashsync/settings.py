from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel

from dashsync.kv_store import KeyValueStore, load_record, save_record

DEFAULT_BASE_URL = "https://api.v2.rainyun.com"
AUTH_KEY = "auth"

logger = logging.getLogger(__name__)


def _get_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return int(v)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    v = os.environ.get(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _get_str(name: str, default: str | None = None) -> str | None:
    v = os.environ.get(name)
    if v is None:
        return default
    s = v.strip()
    return s if s else default


@dataclass(frozen=True)
class Settings:
    base_url: str
    data_dir: Path
    timezone: str
    default_ttl_seconds: float
    http_timeout_seconds: float
    renew_max_days: int
    scan_concurrency: int
    price_concurrency: int
    classify_concurrency: int
    # Forced reads still join an in-flight request for the same key.
    dedup_forced: bool
    refresh_interval_seconds: float
    log_level: str

    @staticmethod
    def load() -> "Settings":
        data_dir = _get_str("DS_DATA_DIR")
        return Settings(
            base_url=_get_str("DS_BASE_URL", DEFAULT_BASE_URL) or DEFAULT_BASE_URL,
            data_dir=Path(data_dir) if data_dir else Path(__file__).resolve().parent.parent / "data",
            timezone=_get_str("DS_TIMEZONE", "Asia/Shanghai") or "Asia/Shanghai",
            default_ttl_seconds=max(0.0, _get_float("DS_DEFAULT_TTL_SECONDS", 8.0)),
            http_timeout_seconds=max(1.0, _get_float("DS_HTTP_TIMEOUT_SECONDS", 10.0)),
            renew_max_days=max(0, _get_int("DS_RENEW_MAX_DAYS", 7)),
            scan_concurrency=max(1, _get_int("DS_SCAN_CONCURRENCY", 5)),
            price_concurrency=max(1, _get_int("DS_PRICE_CONCURRENCY", 3)),
            classify_concurrency=max(1, _get_int("DS_CLASSIFY_CONCURRENCY", 4)),
            dedup_forced=_get_bool("DS_DEDUP_FORCED", False),
            refresh_interval_seconds=max(10.0, _get_float("DS_REFRESH_INTERVAL_SECONDS", 60.0)),
            log_level=(_get_str("DS_LOG_LEVEL", "INFO") or "INFO").upper(),
        )


def effective_settings_dict(settings: Settings) -> dict:
    d = asdict(settings)
    d["data_dir"] = str(settings.data_dir)
    return d


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


AuthMode = Literal["apikey", "devtoken", "none"]


@dataclass(frozen=True)
class AuthConfig:
    base_url: str = DEFAULT_BASE_URL
    api_key: str = ""
    dev_token: str = ""

    @property
    def mode(self) -> AuthMode:
        if self.api_key:
            return "apikey"
        if self.dev_token:
            return "devtoken"
        return "none"

    @property
    def has_credentials(self) -> bool:
        return self.mode != "none"

    @property
    def credential(self) -> str:
        return self.api_key or self.dev_token

    def identity_key(self) -> str:
        """Stable, non-reversible scope for records owned by one account."""
        raw = f"{self.base_url}|{self.mode}|{self.credential}"
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def headers(self) -> dict[str, str]:
        h = {"Content-Type": "application/json"}
        if self.api_key:
            h["x-api-key"] = self.api_key
        if self.dev_token:
            h["rain-dev-token"] = self.dev_token
        return h

    @staticmethod
    def clean(base_url: str | None, api_key: str | None = None, dev_token: str | None = None) -> "AuthConfig":
        return AuthConfig(
            base_url=(base_url or "").strip().rstrip("/") or DEFAULT_BASE_URL,
            api_key=(api_key or "").strip(),
            dev_token=(dev_token or "").strip(),
        )


class StoredAuth(BaseModel):
    base_url: str | None = None
    api_key_enc: str | None = None
    dev_token_enc: str | None = None


def load_auth(kv: KeyValueStore, *, default_base_url: str = DEFAULT_BASE_URL) -> AuthConfig:
    from dashsync.crypto_store import decrypt_secret

    stored = load_record(kv, AUTH_KEY, StoredAuth)
    if stored is None:
        return AuthConfig.clean(default_base_url)
    return AuthConfig.clean(
        stored.base_url or default_base_url,
        decrypt_secret(stored.api_key_enc),
        decrypt_secret(stored.dev_token_enc),
    )


def save_auth(kv: KeyValueStore, auth: AuthConfig) -> None:
    from dashsync.crypto_store import encrypt_secret

    save_record(
        kv,
        AUTH_KEY,
        StoredAuth(
            base_url=auth.base_url,
            api_key_enc=encrypt_secret(auth.api_key) or None,
            dev_token_enc=encrypt_secret(auth.dev_token) or None,
        ),
    )
    logger.info("auth_saved has_api_key=%s has_dev_token=%s", bool(auth.api_key), bool(auth.dev_token))
