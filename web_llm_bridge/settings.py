from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_OAUTH_SCOPES = ",".join(
    [
        "https://www.googleapis.com/auth/cloud-platform",
        "https://www.googleapis.com/auth/userinfo.email",
        "https://www.googleapis.com/auth/userinfo.profile",
    ]
)


class Settings(BaseSettings):
    accounts_dir: str = "./accounts"
    refresh_skew_seconds: int = 300
    profile_config_path: str = "bridge.profile.yaml"
    http_timeout_seconds: float = 30.0
    oauth_client_id: str = ""
    oauth_client_secret: str | None = None
    oauth_authorize_url: str = "https://accounts.google.com/o/oauth2/v2/auth"
    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_userinfo_url: str = "https://www.googleapis.com/oauth2/v2/userinfo"
    oauth_scopes: str = DEFAULT_OAUTH_SCOPES
    oauth_redirect_host: str = "localhost"
    oauth_redirect_port_start: int = 8080
    oauth_redirect_port_end: int = 9000
    oauth_callback_path: str = "/oauth-callback"
    oauth_callback_timeout_seconds: float = 300.0
    project_resolve_url: str | None = None
    ingress_auth_required: bool = False
    ingress_api_keys: str = ""
    sse_transcript_enabled: bool = False
    sse_transcript_path: str = "logs/sse_transcript.jsonl"

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @property
    def oauth_scopes_list(self) -> list[str]:
        return _split_csv(self.oauth_scopes)

    @property
    def ingress_api_keys_list(self) -> list[str]:
        return _split_csv(self.ingress_api_keys)

    @property
    def oauth_redirect_port_range(self) -> range:
        start = max(1, self.oauth_redirect_port_start)
        end = max(start + 1, self.oauth_redirect_port_end)
        return range(start, end)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
