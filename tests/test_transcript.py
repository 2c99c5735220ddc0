from __future__ import annotations

import json
import time
from pathlib import Path

from web_llm_bridge.streaming.transcript import SseTranscriptLogger


def _read_records(path: Path) -> list[dict[str, object]]:
    deadline = time.time() + 1.0
    while time.time() < deadline:
        if path.exists() and path.read_text(encoding="utf-8").strip():
            break
        time.sleep(0.02)
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_transcript_writes_lines_in_order(tmp_path: Path) -> None:
    log_path = tmp_path / "logs" / "sse.jsonl"
    transcript = SseTranscriptLogger(path=str(log_path), enabled=True)
    try:
        transcript.log_request("sess-1", "deepseek-chat", {"model": "deepseek-chat"})
        transcript.log_line("sess-1", 'data: {"v":"hi"}')
        transcript.log_summary(
            "sess-1", thinking_chars=0, answer_chars=2, finished=True, outcome="completed"
        )
    finally:
        transcript.close()

    records = _read_records(log_path)
    assert [record["event"] for record in records] == ["request", "line", "summary"]
    assert records[1]["line"] == 'data: {"v":"hi"}'
    assert records[2]["outcome"] == "completed"
    assert all(record["session_id"] == "sess-1" for record in records)


def test_disabled_transcript_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "sse.jsonl"
    transcript = SseTranscriptLogger(path=str(log_path), enabled=False)
    transcript.log_line("sess-1", "data: x")
    transcript.close()

    assert not log_path.exists()


def test_records_after_close_are_ignored(tmp_path: Path) -> None:
    log_path = tmp_path / "sse.jsonl"
    transcript = SseTranscriptLogger(path=str(log_path), enabled=True)
    transcript.log_line("sess-1", "data: first")
    transcript.close()
    transcript.log_line("sess-1", "data: late")
    transcript.close()

    records = _read_records(log_path)
    assert [record["line"] for record in records] == ["data: first"]
    assert transcript.dropped == 0
