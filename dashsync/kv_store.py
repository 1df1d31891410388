from __future__ import annotations

import re
from pathlib import Path
from typing import Protocol, TypeVar

from pydantic import BaseModel, ValidationError

M = TypeVar("M", bound=BaseModel)


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


def _file_name(key: str) -> str:
    # Keys like "daily-snapshots:ab12" must map to a single safe file name.
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", key.strip())
    return f"{safe or '_'}.json"


class FileKeyValueStore:
    """One JSON document per key under ``data_dir``."""

    def __init__(self, data_dir: Path) -> None:
        self.data_dir = Path(data_dir)

    def _path(self, key: str) -> Path:
        return self.data_dir / _file_name(key)

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError:
            return None

    def set(self, key: str, value: str) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._path(key).write_text(value, encoding="utf-8")

    def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()


def load_record(kv: KeyValueStore, key: str, model: type[M]) -> M | None:
    raw = (kv.get(key) or "").strip()
    if not raw:
        return None
    try:
        return model.model_validate_json(raw)
    except ValidationError:
        return None


def save_record(kv: KeyValueStore, key: str, record: BaseModel) -> str:
    raw = record.model_dump_json(by_alias=True)
    kv.set(key, raw)
    return raw
