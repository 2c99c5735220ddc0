from __future__ import annotations

import json
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

REPLACE_MARKER = "__REPLACE__"
CONVERSATION_ID_FENCE = "```conversation-id"
LOGIN_CONVERSATION_PREFIX = "login-"


@dataclass(frozen=True, slots=True)
class OutboundFrame:
    completion_id: str
    created: int
    model: str
    delta: dict[str, Any] = field(default_factory=dict)
    finish_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.completion_id,
            "object": "chat.completion.chunk",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "delta": self.delta,
                    "finish_reason": self.finish_reason,
                }
            ],
        }

    def encode(self) -> bytes:
        payload = json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
        return f"data: {payload}\n\n".encode("utf-8")


@dataclass(frozen=True, slots=True)
class ErrorFrame:
    message: str
    error_type: str = "upstream_error"
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "message": self.message,
                "type": self.error_type,
                "param": None,
                "code": self.code or self.error_type,
            }
        }

    def encode(self) -> bytes:
        payload = json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))
        return f"data: {payload}\n\n".encode("utf-8")


@dataclass(frozen=True, slots=True)
class StreamTerminator:
    def encode(self) -> bytes:
        return b"data: [DONE]\n\n"


DONE = StreamTerminator()

Frame = OutboundFrame | ErrorFrame | StreamTerminator


class ResponseProjector:
    """Turns decoder deltas into OpenAI ``chat.completion.chunk`` frames."""

    def __init__(
        self,
        model: str,
        *,
        completion_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.model = model
        self.completion_id = completion_id or f"chatcmpl-{uuid4().hex}"
        self._clock = clock
        self._last_created = 0

    def project_chunk(self, thinking_delta: str, answer_delta: str) -> list[OutboundFrame]:
        frames: list[OutboundFrame] = []
        if thinking_delta:
            frames.append(self._frame({"reasoning_content": thinking_delta}))
        if answer_delta:
            frames.append(self._frame({"content": answer_delta}))
        return frames

    def project_replace(self, full_content: str) -> OutboundFrame:
        return self._frame({"content": REPLACE_MARKER + full_content})

    def project_notice(self, message: str) -> OutboundFrame:
        return self._frame({"content": message})

    def project_trailer(self, conversation_id: str | None) -> list[Frame]:
        frames: list[Frame] = []
        if conversation_id:
            frames.append(self._frame({"content": format_conversation_marker(conversation_id)}))
        frames.append(self._frame({}, finish_reason="stop"))
        frames.append(DONE)
        return frames

    def project_error(self, message: str, *, code: str | None = None) -> list[Frame]:
        """Terminal frames for a stream the upstream cut off: an error, then DONE."""
        return [ErrorFrame(message=message, code=code), DONE]

    def _frame(self, delta: dict[str, Any], finish_reason: str | None = None) -> OutboundFrame:
        created = max(int(self._clock()), self._last_created)
        self._last_created = created
        return OutboundFrame(
            completion_id=self.completion_id,
            created=created,
            model=self.model,
            delta=delta,
            finish_reason=finish_reason,
        )


def encode_frames(frames: Sequence[Frame]) -> bytes:
    return b"".join(frame.encode() for frame in frames)


def format_conversation_marker(conversation_id: str) -> str:
    return f"\n\n{CONVERSATION_ID_FENCE}\n{conversation_id}\n```\n\n"


def extract_conversation_id(
    messages: Sequence[Any] | None,
    *,
    exclude_login: bool = True,
) -> str | None:
    """Read back the id written by ``project_trailer`` from chat history."""
    if not messages:
        return None
    for message in reversed(messages):
        if not isinstance(message, dict) or message.get("role") != "assistant":
            continue
        content = message.get("content")
        if not isinstance(content, str):
            continue
        conversation_id = _conversation_id_from_content(content)
        if not conversation_id:
            continue
        if exclude_login and conversation_id.startswith(LOGIN_CONVERSATION_PREFIX):
            return None
        return conversation_id
    return None


def _conversation_id_from_content(content: str) -> str | None:
    start = content.rfind(CONVERSATION_ID_FENCE)
    if start == -1:
        return None
    body_start = start + len(CONVERSATION_ID_FENCE)
    end = content.find("```", body_start)
    if end == -1:
        return None
    for line in content[body_start:end].splitlines():
        candidate = line.strip()
        if candidate:
            return candidate
    return None
