from __future__ import annotations

import logging
from typing import Any, Callable

import httpx

from dashsync.errors import AuthMissingError, NetworkError
from dashsync.payload import JSONValue, decode_payload
from dashsync.request_log import RequestLog
from dashsync.session import SessionContext
from dashsync.settings import DEFAULT_BASE_URL

logger = logging.getLogger(__name__)

ResponseObserver = Callable[[JSONValue], None]


class FailoverRequester:
    """Issues one logical call against the first base URL that answers with 2xx."""

    def __init__(
        self,
        session: SessionContext,
        *,
        default_base_url: str = DEFAULT_BASE_URL,
        request_log: RequestLog | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._session = session
        self._default_base_url = default_base_url.strip().rstrip("/")
        self._request_log = request_log
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            headers={"User-Agent": "dashsync/0.3 (+https://app.rainyun.com)"},
        )
        self._observers: dict[tuple[str, str], list[ResponseObserver]] = {}

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def add_observer(self, method: str, path: str, fn: ResponseObserver) -> None:
        self._observers.setdefault((method.upper(), path), []).append(fn)

    def base_candidates(self) -> list[str]:
        configured = (self._session.auth.base_url or "").strip().rstrip("/")
        out: list[str] = []
        for base in (configured, self._default_base_url):
            if base and base not in out:
                out.append(base)
        return out

    async def request(self, method: str, path: str, body: Any = None) -> JSONValue:
        auth = self._session.auth
        if not auth.has_credentials:
            raise AuthMissingError("no api key or dev token configured")

        method = method.upper()
        headers = auth.headers()
        generation = self._session.generation
        last_error: str | None = None
        for base in self.base_candidates():
            url = f"{base}{path}"
            logger.debug("api_request_start method=%s url=%s", method, url)
            try:
                r = await self._client.request(method, url, headers=headers, json=body)
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                self._log(method=method, path=path, url=url, status=None, ok=False, payload=last_error)
                logger.warning("api_request_retry method=%s base=%s error=%s", method, base, last_error)
                continue

            payload = decode_payload(r.text)
            code = payload.get("code") if isinstance(payload, dict) else None
            self._log(method=method, path=path, url=url, status=r.status_code, ok=r.is_success, code=code, payload=payload)
            logger.info("api_request_done method=%s url=%s status=%s code=%s", method, url, r.status_code, code)
            if not r.is_success:
                last_error = f"请求失败 {r.status_code}"
                logger.warning("api_request_retry method=%s base=%s error=%s", method, base, last_error)
                continue

            if self._session.generation == generation:
                self._notify(method, path, payload)
            else:
                logger.info("response_observers_skipped method=%s path=%s reason=auth_changed", method, path)
            return payload

        raise NetworkError(
            f"网络请求失败，请检查 Base URL/网络：{last_error or 'unknown'}",
            method=method,
            path=path,
            last_error=last_error,
        )

    def _log(self, **fields: Any) -> None:
        if self._request_log is None:
            return
        try:
            self._request_log.append(**fields)
        except OSError as e:
            logger.warning("request_log_write_failed error=%s", e)

    def _notify(self, method: str, path: str, payload: JSONValue) -> None:
        for fn in self._observers.get((method, path), []):
            try:
                fn(payload)
            except Exception:
                logger.exception("response_observer_failed method=%s path=%s", method, path)
