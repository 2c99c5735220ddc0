from __future__ import annotations

import asyncio
from collections.abc import Iterator

import httpx
import pytest

from web_llm_bridge.credentials.callback import (
    OAuthCallbackError,
    OAuthCallbackServer,
    OAuthCallbackTimeout,
)


@pytest.fixture
def callback_server() -> Iterator[OAuthCallbackServer]:
    server = OAuthCallbackServer(host="127.0.0.1", port_range=[0], callback_path="/cb")
    server.start()
    try:
        yield server
    finally:
        server.stop()


def test_redirect_completes_session_matching_state(callback_server: OAuthCallbackServer) -> None:
    first = callback_server.register("session-a")
    second = callback_server.register("session-b")

    response = httpx.get(f"{callback_server.redirect_uri}?code=code-b&state=session-b")

    assert response.status_code == 200
    assert "Authorization complete" in response.text
    assert second.result(timeout=1.0) == "code-b"
    assert not first.done()
    assert callback_server.pending_sessions() == ["session-a"]


def test_redirect_with_unknown_state_completes_oldest_session(
    callback_server: OAuthCallbackServer,
) -> None:
    oldest = callback_server.register("session-a")
    newest = callback_server.register("session-b")

    httpx.get(f"{callback_server.redirect_uri}?code=code-x&state=unknown")

    assert oldest.result(timeout=1.0) == "code-x"
    assert not newest.done()


def test_redirect_error_fails_pending_session(callback_server: OAuthCallbackServer) -> None:
    future = callback_server.register("session-a")

    response = httpx.get(
        f"{callback_server.redirect_uri}?error=access_denied&state=session-a"
    )

    assert response.status_code == 400
    assert "access_denied" in response.text
    with pytest.raises(OAuthCallbackError):
        future.result(timeout=1.0)


def test_other_paths_and_methods_are_rejected(callback_server: OAuthCallbackServer) -> None:
    future = callback_server.register("session-a")
    base = f"http://127.0.0.1:{callback_server.port}"

    assert httpx.get(f"{base}/favicon.ico").status_code == 404
    assert httpx.post(f"{base}/cb").status_code == 405
    assert not future.done()


def test_wait_for_code_times_out_and_forgets_session() -> None:
    server = OAuthCallbackServer(timeout_seconds=0.05)
    server.register("session-a")

    with pytest.raises(OAuthCallbackTimeout) as exc_info:
        asyncio.run(server.wait_for_code("session-a"))

    assert exc_info.value.retryable is True
    assert exc_info.value.session_id == "session-a"
    assert server.pending_sessions() == []


def test_wait_for_code_returns_delivered_code() -> None:
    server = OAuthCallbackServer()

    async def _run() -> str:
        waiter = asyncio.create_task(server.wait_for_code("session-a", timeout_seconds=1.0))
        await asyncio.sleep(0)
        assert server.deliver(code="code-a", error=None, state="session-a") is True
        return await waiter

    assert asyncio.run(_run()) == "code-a"
    assert server.pending_sessions() == []


def test_deliver_without_pending_session_is_unclaimed() -> None:
    server = OAuthCallbackServer()
    assert server.deliver(code="code", error=None, state=None) is False


def test_start_skips_ports_in_use(callback_server: OAuthCallbackServer) -> None:
    busy_port = callback_server.port
    assert busy_port is not None

    blocked = OAuthCallbackServer(host="127.0.0.1", port_range=[busy_port])
    with pytest.raises(OSError):
        blocked.start()

    fallback = OAuthCallbackServer(host="127.0.0.1", port_range=[busy_port, 0])
    try:
        port = fallback.start()
        assert port != busy_port
        assert fallback.start() == port
    finally:
        fallback.stop()


def test_stop_cancels_pending_sessions() -> None:
    server = OAuthCallbackServer(host="127.0.0.1", port_range=[0])
    server.start()
    future = server.register("session-a")

    server.stop()

    assert future.cancelled()
    assert server.port is None
    with pytest.raises(RuntimeError):
        _ = server.redirect_uri
