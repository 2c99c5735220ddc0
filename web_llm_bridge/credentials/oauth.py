from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from web_llm_bridge.credentials.types import Profile, TokenSet
from web_llm_bridge.settings import Settings

logger = logging.getLogger("uvicorn.error")

MISSING_REFRESH_TOKEN_WARNING = (
    "The provider did not return a refresh_token. This usually means the account "
    "already granted consent to this client. The access token will work until it "
    "expires but cannot be refreshed; revoke the app's access in the account "
    "settings and log in again to obtain a refresh token."
)


class OAuthExchangeError(RuntimeError):
    def __init__(
        self,
        *,
        operation: str,
        message: str,
        status_code: int | None = None,
        detail: str | None = None,
    ):
        self.operation = operation
        self.status_code = status_code
        self.detail = detail
        super().__init__(message)


@dataclass(slots=True)
class OAuthClientConfig:
    client_id: str
    client_secret: str | None
    authorize_url: str
    token_url: str
    userinfo_url: str
    scopes: list[str]

    @classmethod
    def from_settings(cls, settings: Settings) -> OAuthClientConfig:
        return cls(
            client_id=settings.oauth_client_id,
            client_secret=settings.oauth_client_secret,
            authorize_url=settings.oauth_authorize_url,
            token_url=settings.oauth_token_url,
            userinfo_url=settings.oauth_userinfo_url,
            scopes=settings.oauth_scopes_list,
        )


class OAuthExchange:
    """Authorization-code, refresh and user-info calls. No retries, no state."""

    def __init__(
        self,
        config: OAuthClientConfig,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> None:
        self._config = config
        self._client_getter = client_getter

    def build_auth_url(self, redirect_uri: str, state: str | None = None) -> str:
        params = {
            "client_id": self._config.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self._config.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state
        return f"{self._config.authorize_url}?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenSet:
        payload = self._client_payload()
        payload.update(
            {
                "code": code,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            }
        )
        body = await self._post_token(payload, operation="exchange_code")
        tokens = _token_set_from_body(body, operation="exchange_code")
        if tokens.missing_refresh_token:
            logger.warning("oauth_exchange_missing_refresh_token")
        logger.info(
            "oauth_exchange_success expires_in=%d refresh_token=%s",
            tokens.expires_in,
            "present" if tokens.refresh_token else "missing",
        )
        return tokens

    async def refresh(self, refresh_token: str) -> TokenSet:
        payload = self._client_payload()
        payload.update(
            {
                "refresh_token": refresh_token,
                "grant_type": "refresh_token",
            }
        )
        body = await self._post_token(payload, operation="refresh")
        tokens = _token_set_from_body(body, operation="refresh")
        if tokens.missing_refresh_token:
            tokens = TokenSet(
                access_token=tokens.access_token,
                refresh_token=refresh_token,
                expires_in=tokens.expires_in,
                token_type=tokens.token_type,
            )
        logger.info("oauth_refresh_success expires_in=%d", tokens.expires_in)
        return tokens

    async def fetch_profile(self, access_token: str) -> Profile:
        try:
            response = await self._client_getter().get(
                self._config.userinfo_url,
                headers={
                    "Authorization": f"Bearer {access_token}",
                    "Accept": "application/json",
                },
            )
        except httpx.RequestError as exc:
            raise OAuthExchangeError(
                operation="fetch_profile",
                message=f"User-info request failed: {exc}",
            ) from exc
        if response.status_code >= 400:
            raise OAuthExchangeError(
                operation="fetch_profile",
                message=f"User-info request failed ({response.status_code}).",
                status_code=response.status_code,
                detail=response.text,
            )
        body = _json_object(response, operation="fetch_profile")
        email = body.get("email")
        if not isinstance(email, str) or not email.strip():
            raise OAuthExchangeError(
                operation="fetch_profile",
                message="User-info response is missing 'email'.",
            )
        return Profile(
            email=email.strip(),
            name=_optional_str(body.get("name")),
            given_name=_optional_str(body.get("given_name")),
            family_name=_optional_str(body.get("family_name")),
            picture=_optional_str(body.get("picture")),
        )

    def _client_payload(self) -> dict[str, str]:
        payload = {"client_id": self._config.client_id}
        if self._config.client_secret:
            payload["client_secret"] = self._config.client_secret
        return payload

    async def _post_token(self, payload: dict[str, str], *, operation: str) -> dict[str, Any]:
        try:
            response = await self._client_getter().post(
                self._config.token_url,
                data=payload,
                headers={"Accept": "application/json"},
            )
        except httpx.RequestError as exc:
            logger.warning("oauth_%s_error reason=request_error", operation)
            raise OAuthExchangeError(
                operation=operation,
                message=f"Token request failed: {exc}",
            ) from exc

        if response.status_code >= 400:
            logger.warning(
                "oauth_%s_error status=%d", operation, response.status_code
            )
            raise OAuthExchangeError(
                operation=operation,
                message=f"Token endpoint rejected the request ({response.status_code}).",
                status_code=response.status_code,
                detail=response.text,
            )
        return _json_object(response, operation=operation)


def _json_object(response: httpx.Response, *, operation: str) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise OAuthExchangeError(
            operation=operation,
            message="Response body is not valid JSON.",
            status_code=response.status_code,
        ) from exc
    if not isinstance(body, dict):
        raise OAuthExchangeError(
            operation=operation,
            message="Response body is not a JSON object.",
            status_code=response.status_code,
        )
    return body


def _token_set_from_body(body: dict[str, Any], *, operation: str) -> TokenSet:
    raw_access = body.get("access_token")
    access_token = str(raw_access).strip() if raw_access is not None else ""
    if not access_token:
        raise OAuthExchangeError(
            operation=operation,
            message="Token response is missing 'access_token'.",
        )
    expires_in = body.get("expires_in")
    if isinstance(expires_in, str) and expires_in.strip().isdigit():
        expires_in = int(expires_in.strip())
    if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
        raise OAuthExchangeError(
            operation=operation,
            message="Token response is missing 'expires_in'.",
        )
    raw_refresh = body.get("refresh_token")
    refresh_token = str(raw_refresh).strip() if raw_refresh is not None else ""
    token_type = body.get("token_type")
    return TokenSet(
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_in=int(expires_in),
        token_type=token_type if isinstance(token_type, str) and token_type else "Bearer",
    )


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None
