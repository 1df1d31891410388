from __future__ import annotations


class DashSyncError(Exception):
    """Base class for errors raised by the sync core."""


class NetworkError(DashSyncError):
    """No candidate base URL produced a successful response."""

    def __init__(self, message: str, *, method: str = "", path: str = "", last_error: str | None = None) -> None:
        super().__init__(message)
        self.method = method
        self.path = path
        self.last_error = last_error


class ParseError(DashSyncError):
    """Response body was not JSON. Recovered by the requester, never surfaced."""


class ItemFetchError(DashSyncError):
    """A single batch-scan item failed. Recovered by omission."""

    def __init__(self, kind: str, item_id: str, reason: str = "") -> None:
        super().__init__(f"{kind}#{item_id}: {reason}" if reason else f"{kind}#{item_id}")
        self.kind = kind
        self.item_id = item_id


class AuthMissingError(DashSyncError):
    """No credential configured; the caller should route to login."""
