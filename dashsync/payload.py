"""Helpers for the loosely-shaped JSON the upstream API returns.

Field names are inconsistent across endpoints (``ExpDate`` vs ``exp_date``,
values nested under ``data`` or ``Data``), so lookups go through alias sets
and a bounded breadth-first search instead of fixed paths.
"""

from __future__ import annotations

import json
import math
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone, tzinfo
from typing import Any, Iterable, Union

from dashsync.errors import ParseError

JSONValue = Union[dict[str, Any], list[Any], str, int, float, bool, None]

_DAY_SECONDS = 86400.0


def pick_first_field_deep(value: JSONValue, keys: Iterable[str], max_depth: int = 4) -> Any:
    """Return the first non-empty leaf whose key matches one of ``keys``.

    Keys compare case-insensitively. Each level is exhausted before descending,
    so shallow matches win over deep ones. Returns "" when nothing matches.
    """
    if not isinstance(value, (dict, list)):
        return ""
    wanted = {str(k).lower() for k in keys}
    queue: deque[tuple[Any, int]] = deque([(value, 0)])
    seen: set[int] = set()
    while queue:
        node, depth = queue.popleft()
        if not isinstance(node, (dict, list)) or id(node) in seen:
            continue
        seen.add(id(node))
        items = list(node.items()) if isinstance(node, dict) else list(enumerate(node))
        for k, v in items:
            if str(k).lower() in wanted and v is not None and v != "":
                return v
        if depth >= max_depth:
            continue
        for _, v in items:
            if isinstance(v, (dict, list)):
                queue.append((v, depth + 1))
    return ""


def pick_by_alias(value: JSONValue, aliases: Iterable[str], fallback: Any = "-") -> Any:
    v = pick_first_field_deep(value, aliases)
    if v is None or v == "":
        return fallback
    return v


def to_number_or_null(value: Any) -> float | None:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        n = float(value)
    except (TypeError, ValueError):
        return None
    return n if math.isfinite(n) else None


def format_money(value: Any) -> str:
    n = to_number_or_null(value)
    return "-" if n is None else f"¥ {n:.2f}"


def format_count(value: Any) -> str:
    n = to_number_or_null(value)
    return "-" if n is None else str(math.floor(n))


def _looks_like_json_container(text: str) -> bool:
    t = text.strip()
    return (t.startswith("{") and t.endswith("}")) or (t.startswith("[") and t.endswith("]"))


def parse_json_text(text: str, *, max_unwrap: int = 2) -> JSONValue:
    """Parse ``text``, unwrapping up to ``max_unwrap`` layers of JSON-in-a-string."""
    if not text:
        return {}
    try:
        payload = json.loads(text)
        for _ in range(max_unwrap):
            if not isinstance(payload, str) or not _looks_like_json_container(payload):
                break
            payload = json.loads(payload.strip())
    except ValueError as e:
        raise ParseError(str(e)) from e
    return payload


def decode_payload(text: str) -> JSONValue:
    try:
        return parse_json_text(text)
    except ParseError:
        return {"raw": text}


def extract_payload_data(payload: JSONValue) -> JSONValue:
    """Unwrap the ``{"code": .., "data": ..}`` envelope when present."""
    if isinstance(payload, str):
        try:
            payload = json.loads(payload)
        except ValueError:
            return {}
    if isinstance(payload, dict):
        data = payload.get("data")
        if isinstance(data, (dict, list)):
            return data
        return payload
    if isinstance(payload, list):
        return payload
    return {}


def unwrap_detail(payload: JSONValue) -> dict[str, Any]:
    """Detail endpoints sometimes nest the record one more level under ``Data``."""
    data = extract_payload_data(payload)
    if isinstance(data, dict):
        inner = data.get("Data")
        if isinstance(inner, dict):
            return inner
        return data
    return {}


def _epoch_to_datetime(n: float) -> datetime:
    if n > 1_000_000_000_000:
        seconds = n / 1000.0
    elif n > 1_000_000_000:
        seconds = n
    else:
        seconds = n / 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_timestamp(value: Any, *, tz: tzinfo | None = None) -> datetime | None:
    """Accepts epoch seconds, epoch milliseconds, or an ISO-ish date string."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    n = to_number_or_null(value)
    if n is not None:
        try:
            return _epoch_to_datetime(n)
        except (OverflowError, OSError, ValueError):
            return None
    s = str(value).strip()
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    try:
        d = datetime.fromisoformat(s)
    except ValueError:
        return None
    if d.tzinfo is None:
        d = d.replace(tzinfo=tz or timezone.utc)
    return d


@dataclass(frozen=True)
class ExpireInfo:
    text: str
    days_text: str
    days: int | None


def parse_expire(value: Any, *, now: float | None = None, tz: tzinfo | None = None) -> ExpireInfo:
    if value is None or value == "":
        return ExpireInfo(text="-", days_text="-", days=None)
    d = parse_timestamp(value, tz=tz)
    if d is None:
        return ExpireInfo(text=str(value), days_text="-", days=None)
    now_epoch = time.time() if now is None else now
    days = math.ceil((d.timestamp() - now_epoch) / _DAY_SECONDS)
    days_text = f"已过期 {abs(days)} 天" if days < 0 else f"剩余 {days} 天"
    local = d.astimezone(tz) if tz is not None else d
    return ExpireInfo(text=local.strftime("%Y-%m-%d %H:%M:%S"), days_text=days_text, days=days)
