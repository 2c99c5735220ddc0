from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeVar

logger = logging.getLogger("uvicorn.error")

T = TypeVar("T")


class LeaseOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    AWAITING_USER_ACTION = "awaiting_user_action"


@dataclass(frozen=True, slots=True)
class AccessIdentity:
    provider: str
    account_id: str | None = None

    @property
    def key(self) -> str:
        if self.account_id:
            return f"{self.provider}:{self.account_id}"
        return self.provider


class AccessLease:
    """A held identity lock that is released exactly once.

    Streaming responses finish on a different code path than the one that
    acquired the lock, so ``release`` may be called from several terminal
    handlers; only the first call has an effect.
    """

    def __init__(self, identity: AccessIdentity, lock: asyncio.Lock) -> None:
        self.identity = identity
        self._lock = lock
        self._outcome: LeaseOutcome | None = None

    @property
    def released(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> LeaseOutcome | None:
        return self._outcome

    def release(self, outcome: LeaseOutcome = LeaseOutcome.COMPLETED) -> bool:
        if self._outcome is not None:
            return False
        self._outcome = outcome
        self._lock.release()
        logger.info(
            "access_lock_released identity=%s outcome=%s",
            self.identity.key,
            outcome.value,
        )
        return True

    async def __aenter__(self) -> AccessLease:
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.release(LeaseOutcome.FAILED if exc_type is not None else LeaseOutcome.COMPLETED)


class AccessSerializer:
    """Per-identity single-flight registry.

    One instance is built at startup and shared by reference. Locks are created
    lazily; no registry-wide lock is held while a caller's work runs.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, identity: AccessIdentity) -> asyncio.Lock:
        lock = self._locks.get(identity.key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[identity.key] = lock
        return lock

    def is_busy(self, identity: AccessIdentity) -> bool:
        lock = self._locks.get(identity.key)
        return lock is not None and lock.locked()

    async def acquire(self, identity: AccessIdentity) -> AccessLease:
        lock = self._lock_for(identity)
        if lock.locked():
            logger.info("access_lock_wait identity=%s", identity.key)
        await lock.acquire()
        logger.info("access_lock_acquired identity=%s", identity.key)
        return AccessLease(identity, lock)

    async def with_lock(
        self,
        identity: AccessIdentity,
        fn: Callable[[], Awaitable[T] | T],
    ) -> T:
        lease = await self.acquire(identity)
        outcome = LeaseOutcome.FAILED
        try:
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            outcome = LeaseOutcome.COMPLETED
            return result
        finally:
            lease.release(outcome)
