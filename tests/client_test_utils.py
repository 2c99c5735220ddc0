from __future__ import annotations

from pathlib import Path
from typing import Any

from fastapi.testclient import TestClient

from web_llm_bridge.main import app
from web_llm_bridge.settings import get_settings

TEST_PROFILE_CONFIG_PATH = (
    Path(__file__).resolve().parent / "fixtures" / "bridge.profile.yaml"
)


def set_default_test_env(monkeypatch: Any, accounts_dir: Path) -> None:
    monkeypatch.setenv("PROFILE_CONFIG_PATH", str(TEST_PROFILE_CONFIG_PATH))
    monkeypatch.setenv("ACCOUNTS_DIR", str(accounts_dir))
    monkeypatch.setenv("SSE_TRANSCRIPT_ENABLED", "false")
    monkeypatch.setenv("INGRESS_AUTH_REQUIRED", "false")


def build_test_client(monkeypatch: Any, accounts_dir: Path, **env: Any) -> TestClient:
    set_default_test_env(monkeypatch, accounts_dir)
    for key, value in env.items():
        monkeypatch.setenv(key, str(value))
    get_settings.cache_clear()
    return TestClient(app)
