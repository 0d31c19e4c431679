"""诊断日志初始化：JSON 行格式、异步队列写入、凭据脱敏与 DEBUG 路由。

所有记录先进入内存队列，由后台 QueueListener 写入
<log_dir>/<process_role>/worker.jsonl；ERROR 及以上同时写 stderr。
"""

from __future__ import annotations

import json
import logging
import logging.config
import re
import sys
from datetime import datetime, timezone
from logging.handlers import QueueListener, RotatingFileHandler
from pathlib import Path
from queue import SimpleQueue
from typing import Any

from agent_worker.config import Settings
from agent_worker.infra.logging.context import CONTEXT_FIELDS, get_log_context

SERVICE_NAME = "agent-worker"
LOG_FILE_NAME = "worker.jsonl"

# 第三方库默认降噪，避免作业日志被淹没。
_NOISY_LOGGERS = ("httpx", "httpcore", "filelock", "celery", "kombu", "amqp")

_NUMERIC_FIELDS = ("duration_ms", "status_code", "retry")
_TEXT_FIELDS = ("external_service", "op", "error_type")

_listener: QueueListener | None = None


class Redactor:
    """按脱敏模式遮蔽诊断文本中的访问令牌与备用凭据。

    default 只处理 key=value 形态；strict 额外遮蔽敏感词后的整段；off 原样输出。
    """

    _PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
        (re.compile(r"(?i)(authorization\s*[:=]\s*bearer\s+)[^\s,;]+"), r"\1***"),
        (re.compile(r"(?i)(\"?accesstoken\"?\s*[:=]\s*\"?)[^\s,;\"]+"), r"\1***"),
        (re.compile(r"(?i)(\"?(?:alt)?password\"?\s*[:=]\s*\"?)[^\s,;\"]+"), r"\1***"),
        (re.compile(r"(?i)(\"?token\"?\s*[:=]\s*\"?)[^\s,;\"]+"), r"\1***"),
        (re.compile(r"(?i)(\"?secret\"?\s*[:=]\s*\"?)[^\s,;\"]+"), r"\1***"),
    )
    _STRICT = re.compile(r"(?i)(authorization|password|token|secret)([^,\s}]*)")

    def __init__(self, mode: str) -> None:
        self.mode = mode.lower()

    def __call__(self, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value)
        if self.mode == "off":
            return text
        for pattern, replacement in self._PATTERNS:
            text = pattern.sub(replacement, text)
        if self.mode == "strict":
            text = self._STRICT.sub(r"\1=***", text)
        return text


def redact_text(value: str | None, mode: str) -> str | None:
    return Redactor(mode)(value)


def render_payload_preview(payload: Any, *, max_chars: int, redaction_mode: str) -> str | None:
    """将 payload 序列化为截断后的预览文本，避免整条作业消息落盘。"""
    if payload is None:
        return None
    if isinstance(payload, str):
        serialized = payload
    else:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            serialized = repr(payload)
    redacted = redact_text(serialized, redaction_mode) or ""
    return redacted if len(redacted) <= max_chars else f"{redacted[:max_chars]}...(truncated)"


class DebugRoutingFilter(logging.Filter):
    """低于 min_level 的记录默认丢弃；指定模块或 job_id 的 DEBUG 记录放行。"""

    def __init__(self, *, min_level: int, debug_modules: set[str], debug_job_ids: set[str]) -> None:
        super().__init__()
        self._min_level = min_level
        self._debug_prefixes = tuple(f"{name}." for name in debug_modules)
        self._debug_modules = frozenset(debug_modules)
        self._debug_job_ids = frozenset(debug_job_ids)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self._min_level:
            return True
        if record.levelno != logging.DEBUG:
            return False
        if record.name in self._debug_modules or record.name.startswith(self._debug_prefixes):
            return True
        job_id = getattr(record, "job_id", None) or get_log_context()["job_id"]
        return job_id is not None and job_id in self._debug_job_ids


class ContextInjectionFilter(logging.Filter):
    """入队前把 contextvars 固化到 record 上，监听线程中无法再读取调用方上下文。"""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in get_log_context().items():
            if value is not None and getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def _as_number(value: Any) -> int | float | None:
    if value is None or isinstance(value, (int, float)):
        return value
    text = str(value)
    try:
        return int(text) if text.isdigit() else float(text)
    except ValueError:
        return None


class StructuredJsonFormatter(logging.Formatter):
    """将 LogRecord 规整为一行 JSON。"""

    def __init__(
        self,
        *,
        service: str,
        process_role: str,
        redaction_mode: str,
        payload_preview_chars: int,
    ) -> None:
        super().__init__()
        self._static = {"service": service, "process_role": process_role}
        self._redact = Redactor(redaction_mode)
        self._redaction_mode = redaction_mode
        self._payload_preview_chars = payload_preview_chars

    def format(self, record: logging.LogRecord) -> str:
        ctx = get_log_context()
        error = getattr(record, "error", None)
        if error is None and record.exc_info:
            error = self.formatException(record.exc_info)

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            **self._static,
            "module": record.name,
            "event": getattr(record, "event", None),
        }
        entry.update({key: getattr(record, key, None) or ctx[key] for key in CONTEXT_FIELDS})
        entry.update({key: getattr(record, key, None) for key in _TEXT_FIELDS})
        entry.update({key: _as_number(getattr(record, key, None)) for key in _NUMERIC_FIELDS})
        entry["message"] = self._redact(record.getMessage())
        entry["error"] = self._redact(error)
        entry["payload_preview"] = render_payload_preview(
            getattr(record, "payload_preview", None),
            max_chars=self._payload_preview_chars,
            redaction_mode=self._redaction_mode,
        )
        return json.dumps(entry, ensure_ascii=False)


def _parse_level(level_text: str) -> int:
    level = logging.getLevelName(str(level_text).upper())
    return level if isinstance(level, int) else logging.INFO


def _log_file(settings: Settings, process_role: str) -> Path:
    log_root = settings.log_dir
    if not log_root.is_absolute():
        log_root = (Path.cwd() / log_root).resolve()
    role_dir = log_root / process_role
    role_dir.mkdir(parents=True, exist_ok=True)
    return role_dir / LOG_FILE_NAME


def _sink_handlers(settings: Settings, log_file: Path, formatter: logging.Formatter) -> list[logging.Handler]:
    file_handler = RotatingFileHandler(
        str(log_file),
        maxBytes=settings.log_max_bytes,
        backupCount=settings.log_backup_count,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    stderr_handler = logging.StreamHandler(stream=sys.stderr)
    stderr_handler.setLevel(logging.ERROR)
    for handler in (file_handler, stderr_handler):
        handler.setFormatter(formatter)
    return [file_handler, stderr_handler]


def configure_logging(settings: Settings, *, process_role: str) -> Path:
    """初始化进程级诊断日志，返回 JSONL 文件路径；重复调用会先关闭上一次的监听器。"""
    global _listener
    shutdown_logging()
    log_file = _log_file(settings, process_role)

    records: SimpleQueue[logging.LogRecord] = SimpleQueue()
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "context": {"()": ContextInjectionFilter},
                "routing": {
                    "()": DebugRoutingFilter,
                    "min_level": _parse_level(settings.log_level),
                    "debug_modules": set(settings.log_debug_modules_list()),
                    "debug_job_ids": set(settings.log_debug_job_ids_list()),
                },
            },
            "handlers": {
                "queue": {
                    "class": "logging.handlers.QueueHandler",
                    "queue": records,
                    "filters": ["context", "routing"],
                }
            },
            "root": {"level": "DEBUG", "handlers": ["queue"]},
            "loggers": {name: {"level": "WARNING"} for name in _NOISY_LOGGERS},
        }
    )

    formatter = StructuredJsonFormatter(
        service=SERVICE_NAME,
        process_role=process_role,
        redaction_mode=settings.log_redaction_mode,
        payload_preview_chars=settings.log_payload_preview_chars,
    )
    _listener = QueueListener(records, *_sink_handlers(settings, log_file, formatter), respect_handler_level=True)
    _listener.start()
    return log_file


def shutdown_logging() -> None:
    """停止队列监听器，刷出尚未写入的记录并关闭文件句柄。"""
    global _listener
    listener, _listener = _listener, None
    if listener is None:
        return
    listener.stop()
    for handler in listener.handlers:
        handler.close()
