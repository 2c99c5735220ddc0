from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from web_llm_bridge.credentials.types import Credential
from web_llm_bridge.utils.persistence import JsonFileStore

logger = logging.getLogger("uvicorn.error")


class CredentialStoreError(RuntimeError):
    def __init__(self, path: Path, message: str):
        self.path = path
        super().__init__(f"{message} ({path})")


class CredentialRecordError(ValueError):
    """Raised when a credential file does not match the expected schema."""


class CredentialStore:
    """One JSON file per account under a single directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def load_all(self) -> list[Credential]:
        if not self.directory.exists():
            logger.warning("credential_dir_missing path=%s", self.directory)
            try:
                self.directory.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                raise CredentialStoreError(
                    self.directory, "Unable to create accounts directory"
                ) from exc
            return []

        credentials: list[Credential] = []
        for path in sorted(self.directory.glob("*.json")):
            try:
                credential = self.load_one(path)
            except (OSError, ValueError) as exc:
                logger.warning("credential_load_error path=%s error=%s", path, exc)
                continue
            credentials.append(credential)
            logger.info(
                "credential_loaded account=%s id=%s", credential.email, credential.id
            )
        logger.info(
            "credential_load_complete path=%s count=%d", self.directory, len(credentials)
        )
        return credentials

    def load_one(self, path: Path) -> Credential:
        raw = JsonFileStore(path).load(default=None)
        return parse_credential_record(raw, path)

    def find_by_email(self, email: str) -> Credential | None:
        if not self.directory.exists():
            return None
        wanted = email.strip().lower()
        for path in sorted(self.directory.glob("*.json")):
            try:
                credential = self.load_one(path)
            except (OSError, ValueError):
                continue
            if credential.email.lower() == wanted:
                return credential
        return None

    def persist(self, credential: Credential) -> None:
        """Rewrite only the token fields, keeping everything else in the file."""
        path = credential.storage_path
        if path is None:
            raise CredentialStoreError(
                self.directory, f"Credential {credential.id} has no storage path"
            )
        self._merge_tokens(path, credential, replace_refresh_token=False)
        logger.debug("credential_persisted account=%s path=%s", credential.email, path)

    def save_login(self, credential: Credential) -> Credential:
        """Store tokens from a fresh sign-in.

        A sign-in for an account that already has a file updates that file in
        place, so fields other than the tokens survive. The new refresh token
        wins when the provider issued one.
        """
        path = credential.storage_path
        if path is None or not path.exists():
            return self.save_new(credential)
        self._merge_tokens(path, credential, replace_refresh_token=True)
        logger.info("credential_relogin_saved account=%s path=%s", credential.email, path)
        return credential

    def save_new(self, credential: Credential) -> Credential:
        path = credential.storage_path or self.directory / f"{credential.id}.json"
        try:
            JsonFileStore(path).write(credential.to_record())
        except OSError as exc:
            raise CredentialStoreError(path, "Unable to write credential file") from exc
        logger.info("credential_saved account=%s path=%s", credential.email, path)
        return replace(credential, storage_path=path)

    def _merge_tokens(
        self, path: Path, credential: Credential, *, replace_refresh_token: bool
    ) -> None:
        store = JsonFileStore(path)
        try:
            raw = store.load(default={})
        except (OSError, ValueError) as exc:
            raise CredentialStoreError(path, "Unable to read credential file") from exc
        if not isinstance(raw, dict):
            raise CredentialStoreError(path, "Credential file root is not an object")

        token = raw.get("token")
        if not isinstance(token, dict):
            token = {}
            raw["token"] = token
        raw.setdefault("id", credential.id)
        raw.setdefault("email", credential.email)

        token["access_token"] = credential.access_token
        token["expires_in"] = credential.expires_in
        token["expiry_timestamp"] = credential.expires_at
        if credential.refresh_token and (
            replace_refresh_token or not token.get("refresh_token")
        ):
            token["refresh_token"] = credential.refresh_token
        if credential.project_id:
            token["project_id"] = credential.project_id

        try:
            store.write(raw)
        except OSError as exc:
            raise CredentialStoreError(path, "Unable to write credential file") from exc


def parse_credential_record(raw: Any, path: Path | None = None) -> Credential:
    if not isinstance(raw, dict):
        raise CredentialRecordError("Credential record must be a JSON object.")
    account_id = _required_str(raw, "id")
    email = _required_str(raw, "email")
    token = raw.get("token")
    if not isinstance(token, dict):
        raise CredentialRecordError("Credential record is missing the 'token' object.")

    access_token = token.get("access_token")
    refresh_token = token.get("refresh_token")
    if not isinstance(access_token, str):
        raise CredentialRecordError("Credential token is missing 'access_token'.")
    if not isinstance(refresh_token, str) or not refresh_token.strip():
        raise CredentialRecordError("Credential token is missing 'refresh_token'.")

    project_id = token.get("project_id")
    return Credential(
        id=account_id,
        email=email,
        access_token=access_token,
        refresh_token=refresh_token.strip(),
        expires_in=_coerce_int(token.get("expires_in")),
        expires_at=_coerce_int(token.get("expiry_timestamp")),
        project_id=project_id if isinstance(project_id, str) and project_id else None,
        storage_path=path,
    )


def _required_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise CredentialRecordError(f"Credential record is missing '{key}'.")
    return value.strip()


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return 0
    return 0
