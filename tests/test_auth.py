from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from tests.client_test_utils import build_test_client
from web_llm_bridge.gateway.auth import AuthConfigurationError


def test_v1_models_allows_when_auth_disabled(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(monkeypatch, tmp_path) as client:
        response = client.get("/v1/models")
        assert response.status_code == 200
        ids = [item["id"] for item in response.json()["data"]]
        assert ids == ["deepseek-chat", "deepseek-reasoner", "shared-model"]


def test_v1_models_rejects_without_token_when_auth_required(
    monkeypatch: Any, tmp_path: Path
) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        response = client.get("/v1/models")
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"
        assert response.json()["error"]["message"] == "Missing Bearer token."


def test_v1_models_rejects_unknown_key(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer someone-else"}
        )
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_api_key"


def test_v1_models_accepts_valid_api_key(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1,bridge-key-2",
    ) as client:
        response = client.get(
            "/v1/models", headers={"Authorization": "Bearer bridge-key-2"}
        )
        assert response.status_code == 200


def test_health_is_open_when_auth_required(monkeypatch: Any, tmp_path: Path) -> None:
    with build_test_client(
        monkeypatch,
        tmp_path,
        INGRESS_AUTH_REQUIRED="true",
        INGRESS_API_KEYS="bridge-key-1",
    ) as client:
        assert client.get("/health").json() == {"status": "ok"}


def test_startup_fails_when_auth_required_without_keys(
    monkeypatch: Any, tmp_path: Path
) -> None:
    client = build_test_client(monkeypatch, tmp_path, INGRESS_AUTH_REQUIRED="true")
    with pytest.raises(AuthConfigurationError):
        with client:
            pass
