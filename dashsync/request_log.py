from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, TypeAdapter, ValidationError

from dashsync.kv_store import KeyValueStore

REQUEST_LOG_KEY = "request-log"
MAX_ENTRIES = 80
MAX_FIELD_CHARS = 200


class RequestLogEntry(BaseModel):
    at: str
    method: str
    path: str
    url: str
    status: int | None = None
    ok: bool = False
    code: Any = None
    payload: str = ""


_entries_adapter = TypeAdapter(list[RequestLogEntry])


def _truncate(value: str, limit: int = MAX_FIELD_CHARS) -> str:
    return value[:limit]


def _payload_preview(payload: Any) -> str:
    if payload is None:
        return ""
    if isinstance(payload, str):
        return _truncate(payload)
    try:
        return _truncate(json.dumps(payload, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        return _truncate(str(payload))


class RequestLog:
    """Bounded ring buffer of completed request attempts, persisted after each append."""

    def __init__(self, kv: KeyValueStore, *, key: str = REQUEST_LOG_KEY, max_entries: int = MAX_ENTRIES) -> None:
        self._kv = kv
        self.key = key
        self.max_entries = max(1, max_entries)

    def entries(self) -> list[RequestLogEntry]:
        raw = (self._kv.get(self.key) or "").strip()
        if not raw:
            return []
        try:
            return _entries_adapter.validate_json(raw)
        except ValidationError:
            return []

    def append(
        self,
        *,
        method: str,
        path: str,
        url: str,
        status: int | None,
        ok: bool,
        code: Any = None,
        payload: Any = None,
    ) -> RequestLogEntry:
        entry = RequestLogEntry(
            at=datetime.now(timezone.utc).isoformat(),
            method=_truncate(method),
            path=_truncate(path),
            url=_truncate(url),
            status=status,
            ok=ok,
            code=_truncate(code) if isinstance(code, str) else code,
            payload=_payload_preview(payload),
        )
        entries = self.entries()
        entries.append(entry)
        entries = entries[-self.max_entries :]
        self._kv.set(self.key, _entries_adapter.dump_json(entries).decode("utf-8"))
        return entry

    def clear(self) -> None:
        self._kv.delete(self.key)
