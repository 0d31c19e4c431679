"""诊断日志测试：脱敏规则、上下文字段注入与 DEBUG 路由。"""

from __future__ import annotations

import json
import logging

from agent_worker.infra.logging.context import bind_log_context, get_log_context
from agent_worker.infra.logging.setup import (
    DebugRoutingFilter,
    StructuredJsonFormatter,
    redact_text,
    render_payload_preview,
)


def _record(message: str, level: int = logging.INFO, name: str = "agent_worker.test", **extra) -> logging.LogRecord:
    record = logging.LogRecord(name, level, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_redact_text_masks_tokens_and_passwords() -> None:
    text = 'Authorization: Bearer abc.def AccessToken=tok-123 "altpassword": "pw"'
    redacted = redact_text(text, "default")

    assert "abc.def" not in redacted
    assert "tok-123" not in redacted
    assert '"pw"' not in redacted
    assert redact_text(text, "off") == text


def test_payload_preview_is_truncated() -> None:
    preview = render_payload_preview({"value": "x" * 50}, max_chars=20, redaction_mode="default")
    assert preview.endswith("...(truncated)")


def test_formatter_includes_bound_context() -> None:
    formatter = StructuredJsonFormatter(
        service="agent-worker",
        process_role="worker",
        redaction_mode="default",
        payload_preview_chars=256,
    )
    with bind_log_context(job_id="job-1", request_id="42"):
        entry = json.loads(formatter.format(_record("job completed", event="job.engine.completed")))
        with bind_log_context(task_id="A"):
            nested = json.loads(formatter.format(_record("task ready")))

    assert entry["job_id"] == "job-1"
    assert entry["request_id"] == "42"
    assert entry["event"] == "job.engine.completed"
    assert entry["service"] == "agent-worker"
    assert nested["job_id"] == "job-1"
    assert nested["task_id"] == "A"
    assert all(value is None for value in get_log_context().values())


def test_debug_routing_by_module_and_job() -> None:
    routing = DebugRoutingFilter(
        min_level=logging.INFO,
        debug_modules={"agent_worker.infra.storage"},
        debug_job_ids={"job-9"},
    )

    assert routing.filter(_record("info"))
    assert not routing.filter(_record("debug", logging.DEBUG))
    assert routing.filter(_record("debug", logging.DEBUG, name="agent_worker.infra.storage.workspace"))
    with bind_log_context(job_id="job-9"):
        assert routing.filter(_record("debug", logging.DEBUG))
