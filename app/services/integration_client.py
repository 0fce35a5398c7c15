from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from app.config import settings

log = logging.getLogger("services.integration_client")

_DEFAULT_TIMEOUT_S = 15.0

_client_pool: dict[str, httpx.AsyncClient] = {}
_client_lock = asyncio.Lock()


@dataclass
class IntegrationResponse:
    """Результат одного HTTP-вызова AI integration (исключения не бросаются)."""

    ok: bool
    status: int
    data: Any = None
    error: Optional[str] = None


def normalize_integration_base(url: Optional[str]) -> Optional[str]:
    """Нормализует базовый URL сервиса (добавляет схему, обрезает слеши)."""

    if not url:
        return None
    base = url.strip()
    if not base:
        return None
    if not base.startswith(("http://", "https://")):
        base = "http://" + base
    return base.rstrip("/")


def get_integration_base() -> Optional[str]:
    """Базовый URL AI integration из AI_INTEGRATION_BASE / AI_ANALYZE_BASE / ANALYZE_BASE."""

    return normalize_integration_base(settings.integration_base)


def _build_timeout(timeout_s: float) -> httpx.Timeout:
    timeout_s = max(0.1, float(timeout_s))
    connect = min(timeout_s, 10.0)
    write = min(timeout_s, 10.0)
    return httpx.Timeout(timeout_s, connect=connect, read=timeout_s, write=write)


async def _get_pooled_client(base_url: str) -> httpx.AsyncClient:
    async with _client_lock:
        client = _client_pool.get(base_url)
        if client is not None:
            return client

        transport = httpx.AsyncHTTPTransport(retries=2)
        client = httpx.AsyncClient(
            base_url=base_url,
            timeout=_build_timeout(_DEFAULT_TIMEOUT_S),
            transport=transport,
            headers={"Content-Type": "application/json"},
        )
        _client_pool[base_url] = client
        return client


async def close_integration_clients() -> None:
    async with _client_lock:
        clients = list(_client_pool.values())
        _client_pool.clear()
    for client in clients:
        await client.aclose()


def _error_text(data: Any, status: int) -> str:
    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail") or data.get("error")
    if isinstance(detail, str) and detail:
        return detail
    if detail:
        return json.dumps(detail, ensure_ascii=False, default=str)
    return f"HTTP {status}"


class IntegrationClient:
    """Тонкая обёртка над httpx для вызовов внешнего AI integration сервиса."""

    def __init__(
        self,
        base_url: str,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        normalized = normalize_integration_base(base_url)
        if not normalized:
            raise ValueError("Empty base URL")
        self.base_url = normalized
        self._own_client: Optional[httpx.AsyncClient] = None
        if transport is not None:
            self._own_client = httpx.AsyncClient(
                base_url=normalized,
                timeout=_build_timeout(_DEFAULT_TIMEOUT_S),
                transport=transport,
            )

    async def _client(self) -> httpx.AsyncClient:
        if self._own_client is not None:
            return self._own_client
        return await _get_pooled_client(self.base_url)

    async def call(
        self,
        path: str,
        *,
        method: str = "GET",
        json_body: Optional[dict[str, Any]] = None,
        timeout: float = _DEFAULT_TIMEOUT_S,
    ) -> IntegrationResponse:
        try:
            client = await self._client()
            response = await client.request(
                method,
                path,
                json=json_body,
                timeout=_build_timeout(timeout),
            )
        except httpx.TimeoutException as exc:
            log.warning("integration: %s %s timed out: %s", method, path, exc)
            return IntegrationResponse(ok=False, status=504, error="AI integration request timed out")
        except httpx.HTTPError as exc:
            log.warning("integration: %s %s failed: %s", method, path, exc)
            return IntegrationResponse(
                ok=False,
                status=500,
                error=str(exc) or "AI integration request failed",
            )

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.is_success:
            return IntegrationResponse(ok=True, status=response.status_code, data=data)
        return IntegrationResponse(
            ok=False,
            status=response.status_code,
            data=data,
            error=_error_text(data, response.status_code),
        )

    async def health(self, *, timeout: float) -> IntegrationResponse:
        """`GET /health`; ответ `{"ok": false}` тоже считается недоступностью."""

        res = await self.call("/health", timeout=timeout)
        if res.ok and isinstance(res.data, Mapping) and res.data.get("ok") is False:
            return IntegrationResponse(
                ok=False,
                status=503,
                data=res.data,
                error="Сервис сообщил ok=false",
            )
        return res

    async def aclose(self) -> None:
        if self._own_client is not None:
            await self._own_client.aclose()


__all__ = [
    "IntegrationClient",
    "IntegrationResponse",
    "close_integration_clients",
    "get_integration_base",
    "normalize_integration_base",
]
