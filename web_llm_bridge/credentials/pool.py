from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol

from web_llm_bridge.credentials.oauth import OAuthExchangeError
from web_llm_bridge.credentials.store import CredentialStore, CredentialStoreError
from web_llm_bridge.credentials.types import Credential, TokenSet
from web_llm_bridge.runtime.rwlock import AsyncReadWriteLock

logger = logging.getLogger("uvicorn.error")

DEFAULT_REFRESH_SKEW_SECONDS = 300


class CredentialPoolError(RuntimeError):
    pass


class PoolEmptyError(CredentialPoolError):
    def __init__(self) -> None:
        super().__init__(
            "No upstream credentials are available. Log in with an account to add one."
        )


class RefreshFailedError(CredentialPoolError):
    def __init__(self, *, credential_id: str, email: str, reason: str):
        self.credential_id = credential_id
        self.email = email
        self.reason = reason
        super().__init__(f"Token refresh failed for account '{email}': {reason}")


class TokenRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> TokenSet: ...


class CredentialPool:
    """Round-robin credential rotation with refresh-ahead.

    The credential list and the cursor only change under ``self._lock``.
    A stale credential is refreshed under the write lock after a re-check, so
    concurrent acquirers that saw the same stale token trigger one refresh.
    """

    def __init__(
        self,
        *,
        store: CredentialStore,
        refresher: TokenRefresher,
        refresh_skew_seconds: int = DEFAULT_REFRESH_SKEW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._refresher = refresher
        self._skew = max(0, int(refresh_skew_seconds))
        self._clock = clock
        self._lock = AsyncReadWriteLock()
        self._credentials: list[Credential] = []
        self._cursor = -1

    @property
    def store(self) -> CredentialStore:
        return self._store

    async def load_all(self, directory: str | Path | None = None) -> int:
        if directory is not None:
            self._store = CredentialStore(directory)
        async with self._lock.write():
            self._credentials = []
            self._cursor = -1
            self._credentials = await asyncio.to_thread(self._store.load_all)
            return len(self._credentials)

    async def add(self, credential: Credential) -> None:
        if not credential.refresh_token:
            raise ValueError(
                f"Credential '{credential.email}' has no refresh token and cannot be pooled."
            )
        async with self._lock.write():
            for index, existing in enumerate(self._credentials):
                if existing.id == credential.id:
                    self._credentials[index] = credential
                    break
            else:
                self._credentials.append(credential)
        logger.info("credential_pool_add account=%s id=%s", credential.email, credential.id)

    async def size(self) -> int:
        async with self._lock.read():
            return len(self._credentials)

    async def snapshot(self) -> list[dict[str, Any]]:
        async with self._lock.read():
            now = self._clock()
            return [
                {
                    **credential.masked(),
                    "stale": credential.is_stale(skew_seconds=self._skew, now=now),
                }
                for credential in self._credentials
            ]

    async def acquire(self) -> Credential:
        while True:
            async with self._lock.read():
                if not self._credentials:
                    raise PoolEmptyError()
                self._cursor = (self._cursor + 1) % len(self._credentials)
                candidate = self._credentials[self._cursor]
                stale = candidate.is_stale(skew_seconds=self._skew, now=self._clock())
            if not stale:
                return candidate

            logger.info(
                "credential_refresh_required account=%s expires_at=%d",
                candidate.email,
                candidate.expires_at,
            )
            async with self._lock.write():
                index = self._index_of(candidate.id)
                if index is None:
                    # Pool was reloaded while waiting; pick again.
                    continue
                current = self._credentials[index]
                if not current.is_stale(skew_seconds=self._skew, now=self._clock()):
                    return current
                refreshed = await self._refresh(current)
                self._credentials[index] = refreshed
                await asyncio.to_thread(self._persist_after_refresh, refreshed)
            return refreshed

    def persist(self, credential: Credential) -> None:
        self._store.persist(credential)

    async def _refresh(self, credential: Credential) -> Credential:
        logger.info("credential_refresh_start account=%s", credential.email)
        try:
            tokens = await self._refresher.refresh(credential.refresh_token)
        except OAuthExchangeError as exc:
            logger.error(
                "credential_refresh_error account=%s status=%s error=%s",
                credential.email,
                exc.status_code,
                exc,
            )
            raise RefreshFailedError(
                credential_id=credential.id,
                email=credential.email,
                reason=str(exc),
            ) from exc
        refreshed = credential.with_access_token(tokens, now=self._clock())
        logger.info(
            "credential_refresh_success account=%s expires_at=%d",
            refreshed.email,
            refreshed.expires_at,
        )
        return refreshed

    def _persist_after_refresh(self, credential: Credential) -> None:
        try:
            self.persist(credential)
        except CredentialStoreError as exc:
            logger.warning(
                "credential_persist_error account=%s path=%s error=%s",
                credential.email,
                exc.path,
                exc,
            )

    def _index_of(self, credential_id: str) -> int | None:
        for index, credential in enumerate(self._credentials):
            if credential.id == credential_id:
                return index
        return None
