from __future__ import annotations

import asyncio
import html
import logging
import threading
from collections.abc import Iterable
from concurrent.futures import Future, InvalidStateError
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlparse

logger = logging.getLogger("uvicorn.error")

DEFAULT_CALLBACK_TIMEOUT_SECONDS = 300.0

_SUCCESS_HTML = (
    "<!doctype html><html><head><meta charset=\"utf-8\"><title>Signed in</title></head>"
    "<body><h1>Authorization complete</h1>"
    "<p>You can close this window and return to the terminal.</p>"
    "<script>setTimeout(function () { window.close(); }, 2000);</script>"
    "</body></html>"
)


class OAuthCallbackError(RuntimeError):
    """The provider redirected back with an error or without a code."""


class OAuthCallbackTimeout(RuntimeError):
    retryable = True

    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {int(timeout_seconds)}s waiting for the OAuth redirect. "
            "Start the login again."
        )


class _OAuthCallbackHandler(BaseHTTPRequestHandler):
    server: _CallbackHTTPServer

    def log_message(self, format: str, *args: object) -> None:  # noqa: A003
        return

    def do_GET(self) -> None:  # noqa: N802
        parsed = urlparse(self.path)
        if parsed.path != self.server.callback_path:
            self._send(404, "<p>Not found</p>")
            return

        params = parse_qs(parsed.query)
        code = _first_query_param(params, "code")
        error = _first_query_param(params, "error")
        state = _first_query_param(params, "state")
        owner = self.server.owner
        if error:
            owner.deliver(code=None, error=error, state=state)
            self._send(400, _error_html(f"Authorization failed: {error}"))
            return
        if not code:
            owner.deliver(code=None, error="missing authorization code", state=state)
            self._send(400, _error_html("The redirect did not include an authorization code."))
            return
        owner.deliver(code=code, error=None, state=state)
        self._send(200, _SUCCESS_HTML)

    def do_POST(self) -> None:  # noqa: N802
        self._send(405, "<p>Method Not Allowed</p>")

    def _send(self, status: int, body: str) -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)


class _CallbackHTTPServer(ThreadingHTTPServer):
    daemon_threads = True

    def __init__(self, address: tuple[str, int], owner: OAuthCallbackServer, callback_path: str):
        self.owner = owner
        self.callback_path = callback_path
        super().__init__(address, _OAuthCallbackHandler)


class OAuthCallbackServer:
    """Loopback HTTP listener that hands OAuth redirect codes to waiting logins.

    Pending logins are keyed by session id, which is also sent as the OAuth
    ``state``. A redirect without a matching state completes the oldest
    pending login.
    """

    def __init__(
        self,
        *,
        host: str = "localhost",
        port_range: Iterable[int] = range(8080, 9000),
        callback_path: str = "/oauth-callback",
        timeout_seconds: float = DEFAULT_CALLBACK_TIMEOUT_SECONDS,
    ) -> None:
        self.host = host
        self.port_range = port_range
        self.callback_path = callback_path
        self.timeout_seconds = timeout_seconds
        self._server: _CallbackHTTPServer | None = None
        self._thread: threading.Thread | None = None
        self._server_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._pending: dict[str, Future[str]] = {}

    @property
    def port(self) -> int | None:
        server = self._server
        if server is None:
            return None
        return int(server.server_address[1])

    @property
    def redirect_uri(self) -> str:
        port = self.port
        if port is None:
            raise RuntimeError("OAuth callback server is not running.")
        return f"http://{self.host}:{port}{self.callback_path}"

    def start(self) -> int:
        with self._server_lock:
            if self._server is not None:
                return int(self._server.server_address[1])
            for port in self.port_range:
                try:
                    server = _CallbackHTTPServer((self.host, port), self, self.callback_path)
                except OSError:
                    continue
                self._server = server
                break
            else:
                raise OSError(f"No free port for the OAuth callback in {self.port_range!r}")
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name="oauth-callback-server",
                daemon=True,
            )
            self._thread.start()
            port = int(self._server.server_address[1])
        logger.info("oauth_callback_started port=%d path=%s", port, self.callback_path)
        return port

    def stop(self) -> None:
        with self._server_lock:
            server, self._server = self._server, None
            thread, self._thread = self._thread, None
        if server is None:
            return
        server.shutdown()
        server.server_close()
        if thread is not None:
            thread.join(timeout=2.0)
        with self._pending_lock:
            pending, self._pending = self._pending, {}
        for future in pending.values():
            future.cancel()
        logger.info("oauth_callback_stopped")

    def register(self, session_id: str) -> Future[str]:
        future: Future[str] = Future()
        with self._pending_lock:
            self._pending[session_id] = future
        return future

    async def wait_for_code(self, session_id: str, timeout_seconds: float | None = None) -> str:
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        with self._pending_lock:
            future = self._pending.get(session_id)
        if future is None:
            future = self.register(session_id)
        try:
            return await asyncio.wait_for(asyncio.wrap_future(future), timeout=timeout)
        except TimeoutError as exc:
            logger.warning("oauth_callback_timeout session=%s timeout=%s", session_id, timeout)
            raise OAuthCallbackTimeout(session_id, timeout) from exc
        finally:
            self.cancel(session_id)

    def cancel(self, session_id: str) -> bool:
        with self._pending_lock:
            future = self._pending.pop(session_id, None)
        if future is None:
            return False
        return future.cancel()

    def pending_sessions(self) -> list[str]:
        with self._pending_lock:
            return list(self._pending)

    def deliver(self, *, code: str | None, error: str | None, state: str | None) -> bool:
        with self._pending_lock:
            session_id, future = self._claim(state)
        if future is None:
            logger.warning("oauth_callback_unclaimed state=%s", state)
            return False
        try:
            if error or not code:
                logger.error("oauth_callback_error session=%s error=%s", session_id, error)
                future.set_exception(OAuthCallbackError(f"OAuth authorization failed: {error}"))
            else:
                logger.info("oauth_callback_code_received session=%s", session_id)
                future.set_result(code)
        except InvalidStateError as exc:
            logger.debug("oauth_callback_late session=%s error=%s", session_id, exc)
            return False
        return True

    def _claim(self, state: str | None) -> tuple[str | None, Future[str] | None]:
        if state and state in self._pending:
            future = self._pending.pop(state)
            if not future.done():
                return state, future
        for session_id, future in list(self._pending.items()):
            if not future.done():
                del self._pending[session_id]
                return session_id, future
        return None, None


def _error_html(message: str) -> str:
    return (
        "<!doctype html><html><head><meta charset=\"utf-8\"><title>Sign-in failed</title></head>"
        f"<body><h1>Authorization failed</h1><p>{html.escape(message)}</p></body></html>"
    )


def _first_query_param(params: dict[str, list[str]], key: str) -> str | None:
    values = params.get(key)
    if not values:
        return None
    value = values[0].strip()
    return value or None
