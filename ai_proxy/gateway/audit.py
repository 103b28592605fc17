from __future__ import annotations

import json
import time
from pathlib import Path
from queue import Full, Queue
from threading import Lock, Thread
from typing import Any

_AUDIT_REDACTED_KEYS = {
    "apikey",
    "api_key",
    "authorization",
    "x-api-key",
    "key",
    "messages",
    "content",
}


def sanitize_audit_event(event: dict[str, Any]) -> dict[str, Any]:
    def _sanitize_value(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, item in value.items():
                if str(key).lower() in _AUDIT_REDACTED_KEYS:
                    sanitized[key] = "[redacted]"
                else:
                    sanitized[key] = _sanitize_value(item)
            return sanitized
        if isinstance(value, list):
            return [_sanitize_value(item) for item in value]
        return value

    sanitized_event = _sanitize_value(event)
    if isinstance(sanitized_event, dict):
        return sanitized_event
    return dict(event)


class JsonlAuditLogger:
    """Append-only JSONL sink for proxy events, written off the event loop."""

    def __init__(
        self,
        path: str,
        enabled: bool = True,
        max_queue_size: int = 8192,
    ) -> None:
        self.enabled = enabled
        self.path = Path(path)
        self._lock = Lock()
        self._queue: Queue[str | None] | None = None
        self._worker: Thread | None = None
        self._dropped_records = 0
        if self.enabled:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._queue = Queue(maxsize=max_queue_size)
            self._worker = Thread(
                target=self._drain_queue, name="ai-proxy-audit-writer", daemon=True
            )
            self._worker.start()

    def log(self, event: dict[str, Any]) -> None:
        if not self.enabled:
            return

        record = {"ts": int(time.time()), **sanitize_audit_event(event)}
        line = json.dumps(record, ensure_ascii=True, separators=(",", ":"), default=str)
        queue = self._queue
        if queue is None:
            return
        try:
            queue.put_nowait(line)
        except Full:
            with self._lock:
                self._dropped_records += 1

    def close(self) -> None:
        queue = self._queue
        worker = self._worker
        if not self.enabled or queue is None or worker is None:
            return
        queue.put(None)
        worker.join(timeout=2.0)

    def _drain_queue(self) -> None:
        queue = self._queue
        if queue is None:
            return
        with self.path.open("a", encoding="utf-8") as handle:
            while True:
                item = queue.get()
                if item is None:
                    queue.task_done()
                    break
                handle.write(item + "\n")
                handle.flush()
                queue.task_done()
            with self._lock:
                dropped = self._dropped_records
                self._dropped_records = 0
            if dropped > 0:
                handle.write(
                    json.dumps(
                        {
                            "ts": int(time.time()),
                            "event": "audit_logger_dropped_records",
                            "dropped_count": dropped,
                        },
                        ensure_ascii=True,
                        separators=(",", ":"),
                    )
                    + "\n"
                )
                handle.flush()
