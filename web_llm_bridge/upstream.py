from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import httpx

from web_llm_bridge.credentials.types import Credential
from web_llm_bridge.profiles import ProviderProfile

logger = logging.getLogger("uvicorn.error")

AUTH_REQUIRED_STATUSES = frozenset({401, 403})


class UpstreamStatusError(RuntimeError):
    def __init__(self, *, provider: str, status_code: int, detail: str | None = None):
        self.provider = provider
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Upstream '{provider}' responded with status {status_code}.")


class UpstreamRequestError(RuntimeError):
    def __init__(self, *, provider: str, message: str):
        self.provider = provider
        super().__init__(message)


def _request_error_details(exc: httpx.RequestError) -> dict[str, Any]:
    url = "<unknown>"
    try:
        url = str(exc.request.url)
    except RuntimeError:
        pass
    return {"error_type": type(exc).__name__, "error": str(exc) or repr(exc), "url": url}


class UpstreamClient:
    """Streaming POSTs to a provider with the caller's credential attached."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        connect_timeout = max(0.1, min(5.0, float(timeout_seconds)))
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=connect_timeout,
                read=max(0.1, float(timeout_seconds)),
                write=max(0.1, float(timeout_seconds)),
                pool=connect_timeout,
            ),
            limits=httpx.Limits(max_connections=128, max_keepalive_connections=32),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_headers(
        self,
        provider: ProviderProfile,
        credential: Credential,
        conversation_id: str | None = None,
    ) -> dict[str, str]:
        headers = {
            "Accept": "text/event-stream",
            "Content-Type": "application/json",
            **provider.headers,
            "Authorization": f"Bearer {credential.access_token}",
        }
        if conversation_id and provider.conversation_id_header:
            headers[provider.conversation_id_header] = conversation_id
        return headers

    @asynccontextmanager
    async def open_stream(
        self,
        provider: ProviderProfile,
        credential: Credential,
        payload: dict[str, Any],
        conversation_id: str | None = None,
    ) -> AsyncIterator[httpx.Response]:
        request = self.client.build_request(
            method="POST",
            url=provider.url,
            json=payload,
            headers=self.build_headers(provider, credential, conversation_id),
        )
        started = time.perf_counter()
        try:
            response = await self.client.send(request, stream=True)
        except httpx.RequestError as exc:
            details = _request_error_details(exc)
            logger.warning(
                "upstream_request_error provider=%s error_type=%s error=%s url=%s",
                provider.name,
                details["error_type"],
                details["error"],
                details["url"],
            )
            raise UpstreamRequestError(
                provider=provider.name,
                message=f"Upstream '{provider.name}' request failed: {details['error']}",
            ) from exc
        logger.info(
            "upstream_connected provider=%s account=%s status=%d connect_ms=%.2f",
            provider.name,
            credential.email,
            response.status_code,
            (time.perf_counter() - started) * 1000.0,
        )
        try:
            yield response
        finally:
            await response.aclose()
