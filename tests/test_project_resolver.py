from __future__ import annotations

import asyncio
import json
import random
import re
from typing import Any, Callable

import httpx

from web_llm_bridge.credentials.project import ProjectResolver, synthesize_project_id

PROJECT_ID_PATTERN = re.compile(r"^(useful|bright|swift|calm|bold)-(fuze|wave|spark|flow|core)-[a-z0-9]{5}$")


def _resolve(handler: Callable[[httpx.Request], httpx.Response], url: str | None = "https://resolve.test") -> str:
    async def _run() -> str:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            resolver = ProjectResolver(url, client_getter=lambda: client)
            return await resolver.resolve("at-1")

    return asyncio.run(_run())


def test_resolve_returns_project_from_response() -> None:
    seen: list[Any] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append((request.headers["Authorization"], json.loads(request.content)))
        return httpx.Response(200, json={"cloudaicompanionProject": "proj-123"})

    assert _resolve(handler) == "proj-123"
    assert seen == [("Bearer at-1", {"metadata": {"ideType": "ANTIGRAVITY"}})]


def test_resolve_falls_back_when_not_entitled() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"currentTier": {"id": "free"}})

    assert PROJECT_ID_PATTERN.match(_resolve(handler))


def test_resolve_falls_back_on_errors_and_without_url() -> None:
    def failing(request: httpx.Request) -> httpx.Response:
        return httpx.Response(403, text="forbidden")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    def unused(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    assert PROJECT_ID_PATTERN.match(_resolve(failing))
    assert PROJECT_ID_PATTERN.match(_resolve(unreachable))
    assert PROJECT_ID_PATTERN.match(_resolve(unused, url=None))


def test_synthesized_project_id_is_deterministic_for_seeded_rng() -> None:
    first = synthesize_project_id(random.Random(7))
    second = synthesize_project_id(random.Random(7))

    assert first == second
    assert PROJECT_ID_PATTERN.match(first)
