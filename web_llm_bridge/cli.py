from __future__ import annotations

import argparse
import asyncio
import json
import webbrowser
from pathlib import Path
from typing import Any, Callable, cast
from urllib.parse import parse_qs, urlparse

import httpx

from web_llm_bridge.credentials.callback import OAuthCallbackServer, OAuthCallbackTimeout
from web_llm_bridge.credentials.login import LoginResult, OAuthLoginFlow
from web_llm_bridge.credentials.oauth import OAuthClientConfig, OAuthExchange
from web_llm_bridge.credentials.project import ProjectResolver
from web_llm_bridge.credentials.store import CredentialStore
from web_llm_bridge.settings import Settings, get_settings
from web_llm_bridge.utils.persistence import YamlFileStore

EXAMPLE_PROFILE: dict[str, Any] = {
    "providers": [
        {
            "name": "deepseek",
            "url": "https://upstream.example/api/v0/chat/completion",
            "models": ["deepseek-chat", "deepseek-reasoner"],
            "lock_scope": "account",
            "conversation_id_header": "x-conversation-id",
            "decoder": {
                "thinking_kinds": ["THINK"],
                "answer_kinds": ["RESPONSE"],
            },
        }
    ]
}


def _parse_authorization_input(value: str) -> tuple[str | None, str | None]:
    raw = value.strip()
    if not raw:
        return None, None

    parsed = urlparse(raw)
    if parsed.scheme and parsed.netloc:
        params = parse_qs(parsed.query)
        return _first_query_param(params, "code"), _first_query_param(params, "state")

    if "code=" in raw:
        params = parse_qs(raw.lstrip("?"))
        return _first_query_param(params, "code"), _first_query_param(params, "state")

    return raw, None


def _first_query_param(params: dict[str, list[str]], key: str) -> str | None:
    values = params.get(key)
    if not values:
        return None
    value = values[0].strip()
    return value or None


def _check_state(expected: str, received: str | None) -> None:
    if received and received != expected:
        raise ValueError("State mismatch in provided code/URL.")


async def _run_login_flow(args: argparse.Namespace, settings: Settings) -> LoginResult:
    if not settings.oauth_client_id:
        raise ValueError("OAUTH_CLIENT_ID is not set; cannot start the OAuth login.")

    async with httpx.AsyncClient(
        timeout=httpx.Timeout(settings.http_timeout_seconds)
    ) as client:
        callback_server = OAuthCallbackServer(
            host=settings.oauth_redirect_host,
            port_range=settings.oauth_redirect_port_range,
            callback_path=settings.oauth_callback_path,
            timeout_seconds=args.timeout_seconds,
        )
        flow = OAuthLoginFlow(
            exchange=OAuthExchange(
                OAuthClientConfig.from_settings(settings),
                client_getter=lambda: client,
            ),
            callback_server=callback_server,
            store=CredentialStore(args.accounts_dir),
            project_resolver=ProjectResolver(
                settings.project_resolve_url, client_getter=lambda: client
            ),
        )
        try:
            session = flow.begin()
            print(f"\nOpen this URL in your browser and complete sign-in:\n{session.auth_url}\n")

            if args.manual_code:
                code, state = _parse_authorization_input(args.manual_code)
                _check_state(session.session_id, state)
                if not code:
                    raise ValueError("Missing authorization code.")
                return await flow.complete_with_code(session, code)

            browser_opened = False
            if args.paste_url:
                print("Paste mode enabled; skipping browser auto-open and callback wait.")
            elif not args.no_browser:
                try:
                    browser_opened = bool(webbrowser.open(session.auth_url))
                except webbrowser.Error:
                    browser_opened = False
            else:
                print("Browser auto-open disabled; waiting for the redirect.")

            if not args.paste_url and (browser_opened or args.no_browser):
                print(f"Waiting for OAuth callback on {session.redirect_uri} ...")
                try:
                    return await flow.complete(session, args.timeout_seconds)
                except OAuthCallbackTimeout as exc:
                    print(str(exc))

            manual = await asyncio.to_thread(
                input, "Paste authorization code (or full redirect URL): "
            )
            code, state = _parse_authorization_input(manual)
            _check_state(session.session_id, state)
            if not code:
                raise ValueError("Missing authorization code.")
            return await flow.complete_with_code(session, code)
        finally:
            callback_server.stop()


def cmd_login(args: argparse.Namespace) -> int:
    settings = get_settings()
    result = asyncio.run(_run_login_flow(args, settings))
    print(
        f"Saved account '{result.credential.email}' ({result.display_name}) "
        f"to {result.path}"
    )
    if result.credential.project_id:
        print(f"Project: {result.credential.project_id}")
    for warning in result.warnings:
        print(f"warning: {warning}")
    return 0


def cmd_accounts(args: argparse.Namespace) -> int:
    store = CredentialStore(args.accounts_dir)
    credentials = store.load_all()
    rows = [credential.masked() for credential in credentials]
    if args.json:
        print(json.dumps(rows, indent=2))
        return 0
    if not rows:
        print(f"No accounts in {store.directory}. Run `web-llm-bridge login` to add one.")
        return 0
    for row in rows:
        print(
            f"{row['email']}\tid={row['id']}\texpires_at={row['expires_at']}"
            f"\tproject={row['project_id'] or '-'}"
        )
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    from web_llm_bridge.main import run

    run(host=args.host, port=args.port)
    return 0


def cmd_init_profile(args: argparse.Namespace) -> int:
    store = YamlFileStore(Path(args.path))
    if store.exists() and not args.force:
        raise ValueError(f"{args.path} already exists; pass --force to overwrite.")
    store.write(EXAMPLE_PROFILE)
    print(f"Wrote example bridge profile to {args.path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="web-llm-bridge",
        description="Pool web chat accounts behind an OpenAI-compatible API.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_cmd = subparsers.add_parser(
        "login",
        help="Run the OAuth login and save the account's credential file.",
    )
    login_cmd.add_argument("--accounts-dir", default=settings.accounts_dir)
    login_cmd.add_argument("--manual-code")
    login_cmd.add_argument(
        "--paste-url",
        action="store_true",
        help=(
            "Force manual paste flow (do not open browser; "
            "paste redirect URL/code in terminal)."
        ),
    )
    login_cmd.add_argument(
        "--timeout-seconds",
        type=float,
        default=settings.oauth_callback_timeout_seconds,
    )
    login_cmd.add_argument("--no-browser", action="store_true")
    login_cmd.set_defaults(handler=cmd_login)

    accounts_cmd = subparsers.add_parser("accounts", help="List stored accounts.")
    accounts_cmd.add_argument("--accounts-dir", default=settings.accounts_dir)
    accounts_cmd.add_argument("--json", action="store_true")
    accounts_cmd.set_defaults(handler=cmd_accounts)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP server.")
    serve_cmd.add_argument("--host", default="0.0.0.0")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.set_defaults(handler=cmd_serve)

    init_cmd = subparsers.add_parser(
        "init-profile", help="Write an example bridge profile YAML."
    )
    init_cmd.add_argument("--path", default=settings.profile_config_path)
    init_cmd.add_argument("--force", action="store_true")
    init_cmd.set_defaults(handler=cmd_init_profile)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handler = cast(Callable[[argparse.Namespace], int], args.handler)

    try:
        return handler(args)
    except Exception as exc:  # pragma: no cover - covered via CLI tests
        parser.exit(2, f"error: {exc}\n")


if __name__ == "__main__":
    raise SystemExit(main())
