from __future__ import annotations

import logging
import random
from collections.abc import Callable

import httpx

logger = logging.getLogger("uvicorn.error")

PROJECT_ID_FIELD = "cloudaicompanionProject"
_ADJECTIVES = ("useful", "bright", "swift", "calm", "bold")
_NOUNS = ("fuze", "wave", "spark", "flow", "core")
_SUFFIX_ALPHABET = "abcdefghijklmnopqrstuvwxyz0123456789"


def synthesize_project_id(rng: random.Random | None = None) -> str:
    chooser = rng or random.Random()
    suffix = "".join(chooser.choice(_SUFFIX_ALPHABET) for _ in range(5))
    return f"{chooser.choice(_ADJECTIVES)}-{chooser.choice(_NOUNS)}-{suffix}"


class ProjectResolver:
    """Looks up the upstream project bound to an account.

    Accounts that are not entitled to a project get a synthesized id so the
    upstream still accepts requests; resolution never fails the login.
    """

    def __init__(
        self,
        url: str | None,
        client_getter: Callable[[], httpx.AsyncClient],
        rng: random.Random | None = None,
    ) -> None:
        self.url = url
        self._client_getter = client_getter
        self._rng = rng

    async def resolve(self, access_token: str) -> str:
        project_id = await self._fetch(access_token) if self.url else None
        if project_id:
            logger.info("project_resolved project_id=%s", project_id)
            return project_id
        fallback = synthesize_project_id(self._rng)
        logger.warning("project_resolve_fallback project_id=%s", fallback)
        return fallback

    async def _fetch(self, access_token: str) -> str | None:
        assert self.url is not None
        try:
            response = await self._client_getter().post(
                self.url,
                json={"metadata": {"ideType": "ANTIGRAVITY"}},
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Content-Type": "application/json",
                },
            )
        except httpx.RequestError as exc:
            logger.warning("project_resolve_error reason=request_error error=%s", exc)
            return None
        if response.status_code != 200 or not response.content:
            logger.warning("project_resolve_error status=%d", response.status_code)
            return None
        try:
            body = response.json()
        except ValueError:
            logger.warning("project_resolve_error reason=invalid_json")
            return None
        if not isinstance(body, dict):
            return None
        project_id = body.get(PROJECT_ID_FIELD)
        if isinstance(project_id, str) and project_id.strip():
            return project_id.strip()
        return None
