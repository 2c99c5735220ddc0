from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger("uvicorn.error")

THINK = "THINK"
RESPONSE = "RESPONSE"
APPEND = "APPEND"
BATCH = "BATCH"
DONE_SENTINEL = "[DONE]"

_MISSING = object()


class Channel(str, Enum):
    THINKING = "thinking"
    ANSWER = "answer"


@dataclass(frozen=True, slots=True)
class DecoderProfile:
    """Everything provider-specific about a diff-patch stream.

    Fragment kinds are open-ended strings. Kinds that appear in neither set
    are recorded but their text is held on the fragment, not classified.
    """

    thinking_kinds: frozenset[str] = frozenset({THINK})
    answer_kinds: frozenset[str] = frozenset({RESPONSE})
    path_field: str = "p"
    operation_field: str = "o"
    value_field: str = "v"
    fragments_path: str = "fragments"
    content_path_pattern: str = r"(?:^|/)fragments/(-?\d+)/content$"
    finish_events: frozenset[str] = frozenset({"finish", "close", "done"})

    def channel_for(self, kind: str | None) -> Channel | None:
        if kind is None:
            return None
        if kind in self.thinking_kinds:
            return Channel.THINKING
        if kind in self.answer_kinds:
            return Channel.ANSWER
        return None

    def is_fragments_path(self, path: str) -> bool:
        return path == self.fragments_path or path.endswith(f"/{self.fragments_path}")


DEFAULT_PROFILE = DecoderProfile()


@dataclass(slots=True)
class Fragment:
    index: int
    kind: str
    content: str = ""


@dataclass(slots=True)
class DecodeState:
    fragments: dict[int, Fragment] = field(default_factory=dict)
    last_active_index: int | None = None
    thinking_text: str = ""
    answer_text: str = ""
    finished: bool = False
    # Heuristic-routed thinking text held by no fragment, keyed by the answer
    # length at the time it arrived.
    unattached_thinking: list[tuple[int, str]] = field(default_factory=list)

    @property
    def fragments_by_index(self) -> dict[int, str]:
        return {index: fragment.kind for index, fragment in self.fragments.items()}

    def next_index(self) -> int:
        if not self.fragments:
            return 0
        return max(self.fragments) + 1

    def latest_index(self) -> int | None:
        if not self.fragments:
            return None
        return max(self.fragments)

    def has_channel(self, profile: DecoderProfile, channel: Channel) -> bool:
        return any(
            profile.channel_for(fragment.kind) is channel
            for fragment in self.fragments.values()
        )


def resolved_answer(state: DecodeState, profile: DecoderProfile) -> str | None:
    """Answer text with misrouted thinking put back, or None if nothing moved.

    Bare text that the heuristic sent to thinking without attaching it to a
    thinking fragment is reassigned once an answer fragment shows up. The
    result only ever adds to the streamed answer.
    """
    if not state.unattached_thinking or not state.has_channel(profile, Channel.ANSWER):
        return None
    parts: list[str] = []
    cursor = 0
    for offset, text in state.unattached_thinking:
        parts.append(state.answer_text[cursor:offset])
        parts.append(text)
        cursor = offset
    parts.append(state.answer_text[cursor:])
    return "".join(parts)


def classify_unaddressed(state: DecodeState, profile: DecoderProfile) -> Channel:
    """Pick a channel for a content event that names no fragment.

    The upstream sometimes streams bare ``{"v": "..."}`` events. The order
    below reflects how think-then-answer streams behave in practice; it is a
    heuristic and can misclassify. Keep the order as is.
    """
    if state.last_active_index is not None:
        active = state.fragments.get(state.last_active_index)
        channel = profile.channel_for(active.kind if active else None)
        if channel is not None:
            return channel
    if state.has_channel(profile, Channel.THINKING) and not state.has_channel(
        profile, Channel.ANSWER
    ):
        return Channel.THINKING
    if state.answer_text:
        return Channel.ANSWER
    if state.thinking_text:
        return Channel.THINKING
    return Channel.ANSWER


class StreamDecoder:
    """Incremental fold of raw SSE lines into thinking/answer buffers.

    One decoder per exchange. Feeding more lines only ever appends to the
    buffers; callers track how much they already emitted.
    """

    def __init__(self, profile: DecoderProfile = DEFAULT_PROFILE) -> None:
        self.profile = profile
        self.state = DecodeState()
        self._content_path = re.compile(profile.content_path_pattern)
        self._partial_line = ""

    @property
    def thinking_text(self) -> str:
        return self.state.thinking_text

    @property
    def answer_text(self) -> str:
        return self.state.answer_text

    @property
    def finished(self) -> bool:
        return self.state.finished

    def feed(self, lines: Iterable[str]) -> DecodeState:
        for line in lines:
            self._consume_line(line)
        return self.state

    def feed_text(self, chunk: str) -> DecodeState:
        """Accept an arbitrary slice of the raw stream, split anywhere."""
        buffered = self._partial_line + chunk
        lines = buffered.split("\n")
        self._partial_line = lines.pop()
        return self.feed(lines)

    def flush(self) -> DecodeState:
        if self._partial_line:
            line, self._partial_line = self._partial_line, ""
            self._consume_line(line)
        return self.state

    def _consume_line(self, raw_line: str) -> None:
        line = raw_line.strip()
        if not line:
            return
        if line.startswith("event:"):
            event_name = line[6:].strip()
            if event_name in self.profile.finish_events:
                self.state.finished = True
            return
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload or payload == "{}":
            return
        if payload == DONE_SENTINEL:
            self.state.finished = True
            return
        try:
            event = json.loads(payload)
        except ValueError as exc:
            logger.warning(
                "decode_parse_error error=%s line=%s", exc, _preview(payload)
            )
            return
        if not isinstance(event, dict):
            logger.debug("decode_event_skipped reason=not_object line=%s", _preview(payload))
            return
        self._apply_event(event)

    def _apply_event(self, event: dict[str, Any]) -> None:
        profile = self.profile
        path = event.get(profile.path_field)
        if not isinstance(path, str):
            path = None
        operation = event.get(profile.operation_field)
        value = event.get(profile.value_field, _MISSING)

        if operation == BATCH and isinstance(value, list):
            for item in value:
                if isinstance(item, dict):
                    self._apply_event(item)
            return

        if (
            operation == APPEND
            and path is not None
            and profile.is_fragments_path(path)
            and isinstance(value, list)
        ):
            self._create_fragments(value)
            return

        if path is not None:
            match = self._content_path.search(path)
            if match is not None:
                self._update_fragment(int(match.group(1)), value, path)
            return

        if isinstance(value, str):
            self._append_unaddressed(value)

    def _create_fragments(self, items: list[Any]) -> None:
        state = self.state
        next_index = state.next_index()
        for item in items:
            if not isinstance(item, dict):
                continue
            kind = item.get("type")
            if not isinstance(kind, str) or not kind:
                continue
            fragment = Fragment(index=next_index, kind=kind)
            state.fragments[next_index] = fragment
            logger.debug("decode_fragment_created index=%d kind=%s", next_index, kind)
            content = item.get("content")
            if isinstance(content, str) and content:
                self._append_to_fragment(fragment, content)
            state.last_active_index = next_index
            next_index += 1

    def _update_fragment(self, index: int, value: Any, path: str) -> None:
        state = self.state
        if index == -1:
            latest = state.latest_index()
            if latest is None:
                logger.debug("decode_fragment_missing index=-1 path=%s", path)
                return
            index = latest
        fragment = state.fragments.get(index)
        if fragment is None:
            logger.debug("decode_fragment_missing index=%d path=%s", index, path)
            return
        state.last_active_index = index
        if isinstance(value, str) and value:
            self._append_to_fragment(fragment, value)

    def _append_to_fragment(self, fragment: Fragment, text: str) -> None:
        fragment.content += text
        channel = self.profile.channel_for(fragment.kind)
        if channel is not None:
            self._append(channel, text)

    def _append_unaddressed(self, text: str) -> None:
        if not text:
            return
        channel = classify_unaddressed(self.state, self.profile)
        active_index = self.state.last_active_index
        active = None if active_index is None else self.state.fragments.get(active_index)
        if active is not None and self.profile.channel_for(active.kind) is channel:
            active.content += text
        elif channel is Channel.THINKING:
            self.state.unattached_thinking.append((len(self.state.answer_text), text))
        self._append(channel, text)

    def _append(self, channel: Channel, text: str) -> None:
        if channel is Channel.THINKING:
            self.state.thinking_text += text
        else:
            self.state.answer_text += text


def _preview(text: str, limit: int = 100) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
