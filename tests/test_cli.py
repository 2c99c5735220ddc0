from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from tests.credential_test_utils import write_credential_file
from web_llm_bridge.cli import _parse_authorization_input, main
from web_llm_bridge.profiles import load_bridge_profile
from web_llm_bridge.settings import get_settings


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch: Any) -> Any:
    monkeypatch.delenv("OAUTH_CLIENT_ID", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_init_profile_writes_loadable_profile(tmp_path: Path) -> None:
    path = tmp_path / "bridge.profile.yaml"

    assert main(["init-profile", "--path", str(path)]) == 0

    profile = load_bridge_profile(path)
    assert profile.available_models() == ["deepseek-chat", "deepseek-reasoner"]


def test_init_profile_refuses_to_overwrite(tmp_path: Path, capsys: Any) -> None:
    path = tmp_path / "bridge.profile.yaml"
    path.write_text("providers: []\n", encoding="utf-8")

    with pytest.raises(SystemExit) as exc_info:
        main(["init-profile", "--path", str(path)])

    assert exc_info.value.code == 2
    assert "--force" in capsys.readouterr().err
    assert path.read_text(encoding="utf-8") == "providers: []\n"

    assert main(["init-profile", "--path", str(path), "--force"]) == 0
    assert load_bridge_profile(path).providers[0].name == "deepseek"


def test_accounts_lists_masked_records(tmp_path: Path, capsys: Any) -> None:
    write_credential_file(tmp_path, access_token="access-token-secret", project_id="proj-1")

    assert main(["accounts", "--accounts-dir", str(tmp_path), "--json"]) == 0

    rows = json.loads(capsys.readouterr().out)
    assert rows == [
        {
            "id": "acct-1",
            "email": "alice@example.com",
            "access_token": "access...",
            "expires_at": rows[0]["expires_at"],
            "project_id": "proj-1",
        }
    ]


def test_accounts_reports_empty_directory(tmp_path: Path, capsys: Any) -> None:
    assert main(["accounts", "--accounts-dir", str(tmp_path / "none")]) == 0
    assert "No accounts" in capsys.readouterr().out


def test_login_requires_client_id(tmp_path: Path, capsys: Any) -> None:
    with pytest.raises(SystemExit) as exc_info:
        main(["login", "--accounts-dir", str(tmp_path), "--manual-code", "abc"])

    assert exc_info.value.code == 2
    assert "OAUTH_CLIENT_ID" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("", (None, None)),
        ("  4/0Abc  ", ("4/0Abc", None)),
        ("http://localhost:8080/oauth-callback?code=c1&state=s1", ("c1", "s1")),
        ("?code=c2&state=s2", ("c2", "s2")),
        ("code=c3", ("c3", None)),
    ],
)
def test_parse_authorization_input(raw: str, expected: tuple[str | None, str | None]) -> None:
    assert _parse_authorization_input(raw) == expected
