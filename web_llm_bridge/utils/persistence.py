from __future__ import annotations

import contextlib
import json
from pathlib import Path
from typing import Any
from uuid import uuid4

import yaml


class _AtomicFileStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.exists()

    def load(self, *, default: Any = None) -> Any:
        if not self.path.exists():
            return default
        with self.path.open("r", encoding="utf-8") as handle:
            payload = self._read(handle)
        if payload is None:
            return default
        return payload

    def write(self, payload: Any, *, atomic: bool = True) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if not atomic:
            with self.path.open("w", encoding="utf-8") as handle:
                self._dump(payload, handle)
            return

        temp_path = self._temp_path()
        try:
            with temp_path.open("w", encoding="utf-8") as handle:
                self._dump(payload, handle)
            temp_path.replace(self.path)
        except Exception:
            with contextlib.suppress(Exception):
                temp_path.unlink(missing_ok=True)
            raise

    def _temp_path(self) -> Path:
        token = uuid4().hex
        return self.path.with_name(f".{self.path.name}.{token}.tmp")

    def _read(self, handle: Any) -> Any:
        raise NotImplementedError

    def _dump(self, payload: Any, handle: Any) -> None:
        raise NotImplementedError


class JsonFileStore(_AtomicFileStore):
    """JSON document persisted with temp-file + rename writes."""

    def _read(self, handle: Any) -> Any:
        text = handle.read()
        if not text.strip():
            return None
        return json.loads(text)

    def _dump(self, payload: Any, handle: Any) -> None:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
        handle.write("\n")


class YamlFileStore(_AtomicFileStore):
    """Shared YAML persistence helper with atomic write support."""

    def _read(self, handle: Any) -> Any:
        return yaml.safe_load(handle)

    def _dump(self, payload: Any, handle: Any) -> None:
        yaml.safe_dump(payload, handle, sort_keys=False)
