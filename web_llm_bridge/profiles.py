from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from web_llm_bridge.streaming.decoder import DecoderProfile


class UnknownModelError(ValueError):
    def __init__(self, model: str, available: list[str]):
        self.model = model
        self.available = available
        super().__init__(
            f"Model '{model}' is not served by any configured provider. "
            f"Available: {', '.join(available) or 'none'}."
        )


class DecoderSettings(BaseModel):
    thinking_kinds: list[str] = Field(default_factory=lambda: ["THINK"])
    answer_kinds: list[str] = Field(default_factory=lambda: ["RESPONSE"])
    path_field: str = "p"
    operation_field: str = "o"
    value_field: str = "v"
    fragments_path: str = "fragments"
    content_path_pattern: str = r"(?:^|/)fragments/(-?\d+)/content$"
    finish_events: list[str] = Field(default_factory=lambda: ["finish", "close", "done"])

    def to_profile(self) -> DecoderProfile:
        return DecoderProfile(
            thinking_kinds=frozenset(self.thinking_kinds),
            answer_kinds=frozenset(self.answer_kinds),
            path_field=self.path_field,
            operation_field=self.operation_field,
            value_field=self.value_field,
            fragments_path=self.fragments_path,
            content_path_pattern=self.content_path_pattern,
            finish_events=frozenset(self.finish_events),
        )


class ProviderProfile(BaseModel):
    name: str
    url: str
    models: list[str] = Field(default_factory=list)
    model_map: dict[str, str] = Field(default_factory=dict)
    lock_scope: Literal["account", "provider"] = "account"
    headers: dict[str, str] = Field(default_factory=dict)
    conversation_id_header: str | None = None
    conversation_id_field: str | None = "conversation_id"
    project_id_field: str | None = None
    decoder: DecoderSettings = Field(default_factory=DecoderSettings)

    @field_validator("models", mode="before")
    @classmethod
    def _coerce_models(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            raise ValueError("models must be a list of model ids")
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            item = item.strip()
            if item and item not in cleaned:
                cleaned.append(item)
        return cleaned

    def upstream_model(self, model: str) -> str:
        return self.model_map.get(model, model)

    def decoder_profile(self) -> DecoderProfile:
        return self.decoder.to_profile()


class BridgeProfile(BaseModel):
    providers: list[ProviderProfile] = Field(default_factory=list)

    def available_models(self) -> list[str]:
        seen: list[str] = []
        for provider in self.providers:
            for model in provider.models:
                if model not in seen:
                    seen.append(model)
        return seen

    def provider_for_model(self, model: str | None) -> ProviderProfile:
        requested = (model or "").strip()
        for provider in self.providers:
            if requested in provider.models:
                return provider
        raise UnknownModelError(requested, self.available_models())


def load_bridge_profile(path: str | Path) -> BridgeProfile:
    resolved = Path(path)
    if not resolved.exists():
        raise FileNotFoundError(
            f"Bridge profile not found at '{resolved}'. "
            "Create it or set PROFILE_CONFIG_PATH.",
        )
    with resolved.open("r", encoding="utf-8") as handle:
        payload = yaml.safe_load(handle) or {}
    if not isinstance(payload, dict):
        raise ValueError(f"Expected YAML object in '{resolved}'.")
    return BridgeProfile.model_validate(payload)
