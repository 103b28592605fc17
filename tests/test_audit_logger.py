from __future__ import annotations

import json
import time
from pathlib import Path
from typing import Any

from ai_proxy.gateway.audit import JsonlAuditLogger, sanitize_audit_event


def _wait_for_lines(path: Path, count: int = 1) -> list[str]:
    deadline = time.time() + 1.0
    lines: list[str] = []
    while time.time() < deadline:
        if path.exists():
            lines = [line for line in path.read_text(encoding="utf-8").splitlines() if line]
            if len(lines) >= count:
                break
        time.sleep(0.02)
    return lines


def test_audit_logger_writes_records_before_close(tmp_path: Path) -> None:
    log_path = tmp_path / "ai_proxy_audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "proxy_request", "request_id": "req-1", "provider": "openai"})

        lines = _wait_for_lines(log_path)

        assert lines
        payload = json.loads(lines[0])
        assert payload["event"] == "proxy_request"
        assert payload["request_id"] == "req-1"
        assert isinstance(payload["ts"], int)
    finally:
        logger.close()


def test_audit_logger_redacts_secrets_before_writing(tmp_path: Path) -> None:
    log_path = tmp_path / "audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=True)
    try:
        logger.log({"event": "proxy_request", "apiKey": "sk-secret123"})
        lines = _wait_for_lines(log_path)
    finally:
        logger.close()

    assert "sk-secret123" not in "\n".join(lines)
    assert json.loads(lines[0])["apiKey"] == "[redacted]"


def test_disabled_audit_logger_writes_nothing(tmp_path: Path) -> None:
    log_path = tmp_path / "nested" / "audit.jsonl"
    logger = JsonlAuditLogger(path=str(log_path), enabled=False)
    logger.log({"event": "proxy_request"})
    logger.close()

    assert not log_path.exists()
    assert not log_path.parent.exists()


def test_sanitize_audit_event_redacts_keys_and_message_content() -> None:
    event: dict[str, Any] = {
        "event": "proxy_request",
        "headers": {"Authorization": "Bearer abc", "x-api-key": "sk-ant-xyz", "accept": "*/*"},
        "body": {
            "messages": [{"role": "user", "content": "private prompt"}],
            "model": "gpt-4o",
        },
        "attempts": [{"key": "AIza-secret", "status": 200}],
    }

    sanitized = sanitize_audit_event(event)

    assert sanitized["headers"]["Authorization"] == "[redacted]"
    assert sanitized["headers"]["x-api-key"] == "[redacted]"
    assert sanitized["headers"]["accept"] == "*/*"
    assert sanitized["body"]["messages"] == "[redacted]"
    assert sanitized["body"]["model"] == "gpt-4o"
    assert sanitized["attempts"][0] == {"key": "[redacted]", "status": 200}
    assert event["body"]["messages"][0]["content"] == "private prompt"
