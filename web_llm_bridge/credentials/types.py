from __future__ import annotations

import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any


@dataclass(frozen=True, slots=True)
class TokenSet:
    access_token: str
    refresh_token: str | None
    expires_in: int
    token_type: str = "Bearer"

    @property
    def missing_refresh_token(self) -> bool:
        return not self.refresh_token


@dataclass(frozen=True, slots=True)
class Profile:
    email: str
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture: str | None = None

    @property
    def display_name(self) -> str:
        if self.name and self.name.strip():
            return self.name
        if self.given_name and self.family_name:
            return f"{self.given_name} {self.family_name}"
        return self.given_name or self.family_name or self.email


@dataclass(frozen=True, slots=True)
class Credential:
    """One upstream identity.

    Instances are immutable: a refresh produces a new value that replaces the
    old one in the pool, so readers never observe a half-updated token.
    """

    id: str
    email: str
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: int
    project_id: str | None = None
    storage_path: Path | None = None

    def is_stale(self, *, skew_seconds: int, now: float | None = None) -> bool:
        current = time.time() if now is None else now
        return current >= self.expires_at - skew_seconds

    def with_access_token(self, tokens: TokenSet, *, now: float | None = None) -> Credential:
        issued_at = int(time.time() if now is None else now)
        return replace(
            self,
            access_token=tokens.access_token,
            expires_in=int(tokens.expires_in),
            expires_at=issued_at + int(tokens.expires_in),
        )

    def token_record(self) -> dict[str, Any]:
        record: dict[str, Any] = {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "expiry_timestamp": self.expires_at,
        }
        if self.project_id:
            record["project_id"] = self.project_id
        return record

    def to_record(self) -> dict[str, Any]:
        return {"id": self.id, "email": self.email, "token": self.token_record()}

    def masked(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "access_token": mask_secret(self.access_token),
            "expires_at": self.expires_at,
            "project_id": self.project_id,
        }


def mask_secret(value: str | None, visible: int = 6) -> str:
    if not value:
        return ""
    if len(value) <= visible:
        return "*" * len(value)
    return f"{value[:visible]}..."
