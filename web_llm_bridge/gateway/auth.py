from __future__ import annotations

from dataclasses import dataclass

from fastapi import Request, status
from fastapi.responses import JSONResponse

from web_llm_bridge.settings import Settings


class AuthConfigurationError(RuntimeError):
    """Raised when ingress auth is required but no API keys are configured."""


@dataclass(slots=True)
class AuthResult:
    method: str
    principal: str


class Authenticator:
    def __init__(self, settings: Settings):
        self.required = settings.ingress_auth_required
        self.api_keys = set(settings.ingress_api_keys_list)

        if self.required and not self.api_keys:
            raise AuthConfigurationError(
                "Ingress auth is required, but no API keys are configured. "
                "Set INGRESS_API_KEYS or disable INGRESS_AUTH_REQUIRED.",
            )

    async def authenticate_request(self, request: Request) -> JSONResponse | None:
        if not self.required:
            return None

        auth_header = request.headers.get("authorization", "")
        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _unauthorized("Missing Bearer token.")

        if token.strip() in self.api_keys:
            request.state.auth = AuthResult(method="api_key", principal="api-key-client")
            return None

        return _unauthorized("Invalid API key.")


def _unauthorized(message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        headers={"WWW-Authenticate": "Bearer"},
        content={
            "error": {
                "message": message,
                "type": "authentication_error",
                "param": None,
                "code": "invalid_api_key",
            },
        },
    )
