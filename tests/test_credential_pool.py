from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any

import pytest

from tests.credential_test_utils import (
    CountingRefresher,
    read_json,
    write_credential_file,
)
from web_llm_bridge.credentials.pool import (
    CredentialPool,
    PoolEmptyError,
    RefreshFailedError,
)
from web_llm_bridge.credentials.store import CredentialStore, CredentialStoreError
from web_llm_bridge.credentials.types import Credential


def _pool(directory: Path, refresher: CountingRefresher, **kwargs: Any) -> CredentialPool:
    return CredentialPool(store=CredentialStore(directory), refresher=refresher, **kwargs)


def test_acquire_on_empty_pool_raises(tmp_path: Path) -> None:
    pool = _pool(tmp_path / "accounts", CountingRefresher())

    async def _run() -> None:
        assert await pool.load_all() == 0
        with pytest.raises(PoolEmptyError):
            await pool.acquire()

    asyncio.run(_run())


def test_acquire_rotates_round_robin(tmp_path: Path) -> None:
    for name in ("a", "b", "c"):
        write_credential_file(tmp_path, account_id=name, email=f"{name}@example.com")
    refresher = CountingRefresher()
    pool = _pool(tmp_path, refresher)

    async def _run() -> list[str]:
        await pool.load_all()
        return [(await pool.acquire()).id for _ in range(7)]

    assert asyncio.run(_run()) == ["a", "b", "c", "a", "b", "c", "a"]
    assert refresher.calls == []


def test_load_all_resets_rotation(tmp_path: Path) -> None:
    for name in ("a", "b"):
        write_credential_file(tmp_path, account_id=name, email=f"{name}@example.com")
    pool = _pool(tmp_path, CountingRefresher())

    async def _run() -> list[str]:
        await pool.load_all()
        first = (await pool.acquire()).id
        await pool.load_all()
        second = (await pool.acquire()).id
        return [first, second]

    assert asyncio.run(_run()) == ["a", "a"]


def test_concurrent_acquirers_trigger_a_single_refresh(tmp_path: Path) -> None:
    write_credential_file(tmp_path, expiry_timestamp=int(time.time()) - 10)
    refresher = CountingRefresher(delay_seconds=0.05)
    pool = _pool(tmp_path, refresher)

    async def _run() -> list[Credential]:
        await pool.load_all()
        return await asyncio.gather(*(pool.acquire() for _ in range(10)))

    results = asyncio.run(_run())

    assert refresher.calls == ["refresh-1"]
    assert {credential.access_token for credential in results} == {"fresh-1"}


def test_refresh_inside_skew_window(tmp_path: Path) -> None:
    now = 1_000_000
    write_credential_file(tmp_path, expiry_timestamp=now + 299)
    write_credential_file(
        tmp_path, account_id="acct-2", email="b@example.com", expiry_timestamp=now + 301
    )
    refresher = CountingRefresher()
    pool = _pool(tmp_path, refresher, clock=lambda: float(now))

    async def _run() -> list[str]:
        await pool.load_all()
        return [(await pool.acquire()).access_token for _ in range(2)]

    assert asyncio.run(_run()) == ["fresh-1", "access-old"]
    assert len(refresher.calls) == 1


def test_refresh_failure_surfaces_and_leaves_credential_unchanged(tmp_path: Path) -> None:
    path = write_credential_file(tmp_path, expiry_timestamp=int(time.time()) - 10)
    before = read_json(path)
    refresher = CountingRefresher(fail_times=1)
    pool = _pool(tmp_path, refresher)

    async def _run() -> Credential:
        await pool.load_all()
        with pytest.raises(RefreshFailedError) as exc_info:
            await pool.acquire()
        assert exc_info.value.email == "alice@example.com"
        assert read_json(path) == before
        return await pool.acquire()

    retried = asyncio.run(_run())

    assert len(refresher.calls) == 2
    assert retried.access_token == "fresh-2"


def test_refresh_without_new_refresh_token_keeps_stored_one(tmp_path: Path) -> None:
    path = write_credential_file(
        tmp_path,
        refresh_token="refresh-original",
        expiry_timestamp=int(time.time()) - 10,
        extra={"label": "primary"},
    )
    pool = _pool(tmp_path, CountingRefresher())

    async def _run() -> Credential:
        await pool.load_all()
        return await pool.acquire()

    credential = asyncio.run(_run())

    assert credential.refresh_token == "refresh-original"
    record = read_json(path)
    assert record["token"]["refresh_token"] == "refresh-original"
    assert record["label"] == "primary"


def test_expired_credential_file_is_refreshed_and_persisted(tmp_path: Path) -> None:
    now = int(time.time())
    path = write_credential_file(tmp_path, expiry_timestamp=now - 10)
    pool = _pool(tmp_path, CountingRefresher(expires_in=3600))

    async def _run() -> Credential:
        await pool.load_all()
        return await pool.acquire()

    credential = asyncio.run(_run())

    token = read_json(path)["token"]
    assert token["access_token"] == "fresh-1" == credential.access_token
    assert token["expiry_timestamp"] > now + 290
    assert token["expires_in"] == 3600
    assert token["refresh_token"] == "refresh-1"


def test_persist_failure_still_returns_fresh_token(
    tmp_path: Path, monkeypatch: Any, caplog: Any
) -> None:
    write_credential_file(tmp_path, expiry_timestamp=int(time.time()) - 10)
    store = CredentialStore(tmp_path)
    pool = CredentialPool(store=store, refresher=CountingRefresher())

    def _fail(credential: Credential) -> None:
        raise CredentialStoreError(tmp_path / "acct-1.json", "Unable to write credential file")

    monkeypatch.setattr(store, "persist", _fail)

    async def _run() -> Credential:
        await pool.load_all()
        return await pool.acquire()

    with caplog.at_level(logging.WARNING):
        credential = asyncio.run(_run())

    assert credential.access_token == "fresh-1"
    assert "credential_persist_error" in caplog.text


def test_add_rejects_credentials_without_refresh_token(tmp_path: Path) -> None:
    pool = _pool(tmp_path, CountingRefresher())
    credential = Credential(
        id="x",
        email="x@example.com",
        access_token="a",
        refresh_token="",
        expires_in=3600,
        expires_at=int(time.time()) + 3600,
    )

    with pytest.raises(ValueError):
        asyncio.run(pool.add(credential))


def test_add_upserts_and_snapshot_masks_tokens(tmp_path: Path) -> None:
    write_credential_file(tmp_path, access_token="ya29.secret-value")
    pool = _pool(tmp_path, CountingRefresher())
    replacement = Credential(
        id="acct-1",
        email="alice@example.com",
        access_token="ya29.replaced-token",
        refresh_token="refresh-1",
        expires_in=3600,
        expires_at=int(time.time()) + 3600,
    )

    async def _run() -> tuple[int, list[dict[str, Any]]]:
        await pool.load_all()
        await pool.add(replacement)
        return await pool.size(), await pool.snapshot()

    size, snapshot = asyncio.run(_run())

    assert size == 1
    assert snapshot[0]["access_token"] == "ya29.r..."
    assert snapshot[0]["stale"] is False
