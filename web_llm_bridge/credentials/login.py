from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from web_llm_bridge.credentials.callback import OAuthCallbackServer
from web_llm_bridge.credentials.oauth import MISSING_REFRESH_TOKEN_WARNING, OAuthExchange
from web_llm_bridge.credentials.pool import CredentialPool
from web_llm_bridge.credentials.project import ProjectResolver
from web_llm_bridge.credentials.store import CredentialStore
from web_llm_bridge.credentials.types import Credential

logger = logging.getLogger("uvicorn.error")


@dataclass(slots=True)
class LoginSession:
    session_id: str
    auth_url: str
    redirect_uri: str


@dataclass(slots=True)
class LoginResult:
    credential: Credential
    path: Path
    display_name: str
    pooled: bool
    warnings: list[str] = field(default_factory=list)


class OAuthLoginFlow:
    """Authorization-code login that ends with a credential file on disk.

    ``begin`` starts the loopback listener and returns the URL to open;
    ``complete`` waits for the redirect. ``complete_with_code`` is the manual
    path for codes pasted by the user.
    """

    def __init__(
        self,
        *,
        exchange: OAuthExchange,
        callback_server: OAuthCallbackServer,
        store: CredentialStore,
        pool: CredentialPool | None = None,
        project_resolver: ProjectResolver | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._exchange = exchange
        self._callback_server = callback_server
        self._store = store
        self._pool = pool
        self._project_resolver = project_resolver
        self._clock = clock

    def begin(self) -> LoginSession:
        self._callback_server.start()
        session_id = uuid4().hex
        self._callback_server.register(session_id)
        redirect_uri = self._callback_server.redirect_uri
        auth_url = self._exchange.build_auth_url(redirect_uri, state=session_id)
        logger.info("oauth_login_begin session=%s redirect_uri=%s", session_id, redirect_uri)
        return LoginSession(session_id=session_id, auth_url=auth_url, redirect_uri=redirect_uri)

    async def complete(
        self, session: LoginSession, timeout_seconds: float | None = None
    ) -> LoginResult:
        code = await self._callback_server.wait_for_code(session.session_id, timeout_seconds)
        return await self.complete_with_code(session, code)

    def cancel(self, session: LoginSession) -> None:
        if self._callback_server.cancel(session.session_id):
            logger.info("oauth_login_cancelled session=%s", session.session_id)

    async def complete_with_code(self, session: LoginSession, code: str) -> LoginResult:
        self._callback_server.cancel(session.session_id)
        tokens = await self._exchange.exchange_code(code, session.redirect_uri)
        profile = await self._exchange.fetch_profile(tokens.access_token)
        project_id = None
        if self._project_resolver is not None:
            project_id = await self._project_resolver.resolve(tokens.access_token)

        existing = await asyncio.to_thread(self._store.find_by_email, profile.email)
        now = int(self._clock())
        refresh_token = tokens.refresh_token or ""
        if not refresh_token and existing is not None:
            refresh_token = existing.refresh_token
        credential = Credential(
            id=existing.id if existing is not None else str(uuid4()),
            email=profile.email,
            access_token=tokens.access_token,
            refresh_token=refresh_token,
            expires_in=tokens.expires_in,
            expires_at=now + tokens.expires_in,
            project_id=project_id or (existing.project_id if existing else None),
            storage_path=existing.storage_path if existing is not None else None,
        )
        saved = await asyncio.to_thread(self._store.save_login, credential)

        warnings: list[str] = []
        pooled = False
        if not saved.refresh_token:
            warnings.append(MISSING_REFRESH_TOKEN_WARNING)
            logger.warning("oauth_login_not_pooled account=%s reason=missing_refresh_token", saved.email)
        elif self._pool is not None:
            await self._pool.add(saved)
            pooled = True

        assert saved.storage_path is not None
        logger.info(
            "oauth_login_complete account=%s id=%s pooled=%s",
            saved.email,
            saved.id,
            pooled,
        )
        return LoginResult(
            credential=saved,
            path=saved.storage_path,
            display_name=profile.display_name,
            pooled=pooled,
            warnings=warnings,
        )
