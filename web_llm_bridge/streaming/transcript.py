from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from queue import Full, Queue
from threading import Thread
from typing import Any

logger = logging.getLogger("uvicorn.error")


class SseTranscriptLogger:
    """Raw upstream SSE lines, one JSON record per line, for offline debugging.

    A single writer thread owns the file. Records that do not fit in the
    queue are dropped; the count is reported when the transcript closes.
    """

    def __init__(self, path: str, enabled: bool = True, max_queue_size: int = 8192) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self.dropped = 0
        self._queue: Queue[str | None] = Queue(maxsize=max_queue_size)
        self._writer: Thread | None = None
        if enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._writer = Thread(target=self._write_loop, name="sse-transcript", daemon=True)
            self._writer.start()

    def log_request(self, session_id: str, model: str, payload: dict[str, Any]) -> None:
        self._record("request", session_id, model=model, payload=payload)

    def log_line(self, session_id: str, line: str) -> None:
        self._record("line", session_id, line=line)

    def log_summary(self, session_id: str, **counters: Any) -> None:
        self._record("summary", session_id, **counters)

    def close(self) -> None:
        writer, self._writer = self._writer, None
        if writer is None:
            return
        self._queue.put(None)
        writer.join(timeout=2.0)
        if self.dropped:
            logger.warning(
                "sse_transcript_dropped path=%s count=%d", self.path, self.dropped
            )

    def _record(self, event: str, session_id: str, **fields: Any) -> None:
        if self._writer is None:
            return
        record = {"ts": round(time.time(), 3), "event": event, "session_id": session_id}
        record.update(fields)
        try:
            self._queue.put_nowait(json.dumps(record, separators=(",", ":"), default=str))
        except Full:
            self.dropped += 1

    def _write_loop(self) -> None:
        with self.path.open("a", encoding="utf-8") as handle:
            for item in iter(self._queue.get, None):
                handle.write(item + "\n")
                handle.flush()
