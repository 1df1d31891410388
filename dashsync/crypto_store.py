from __future__ import annotations

import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken

DATA_DIR = Path(os.environ.get("DS_DATA_DIR") or Path(__file__).resolve().parent.parent / "data")
KEY_PATH = DATA_DIR / "secret.key"


def _load_or_create_key(key_path: Path) -> bytes:
    if key_path.exists():
        key = key_path.read_bytes().strip()
        if key:
            return key
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    key_path.write_bytes(key)
    return key


def _fernet() -> Fernet:
    # KEY_PATH is read at call time so tests can point it at a tmp dir.
    return Fernet(_load_or_create_key(KEY_PATH))


def encrypt_secret(plain: str | None) -> str:
    s = (plain or "").strip()
    if not s:
        return ""
    return _fernet().encrypt(s.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str | None) -> str:
    """Returns "" for empty, foreign or corrupt tokens."""
    t = (token or "").strip()
    if not t:
        return ""
    try:
        return _fernet().decrypt(t.encode("ascii")).decode("utf-8")
    except (InvalidToken, ValueError):
        return ""


def mask_secret(plain: str | None, *, keep: int = 4) -> str:
    s = (plain or "").strip()
    if not s:
        return ""
    if len(s) <= keep:
        return "*" * len(s)
    return "*" * min(8, len(s) - keep) + s[-keep:]
