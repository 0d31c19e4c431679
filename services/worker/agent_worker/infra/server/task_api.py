"""任务目录 HTTP 客户端：列举任务定义并流式下载任务包。"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

import httpx
from pydantic import ValidationError

from agent_worker.domain.errors import TaskDownloadError
from agent_worker.domain.models import TaskDefinition

logger = logging.getLogger(__name__)

TASKS_PATH = "/_apis/distributedtask/tasks"


class TaskApiClient:
    """分布式任务目录的异步 HTTP 客户端封装。"""

    def __init__(
        self,
        base_url: str,
        auth: httpx.Auth | None = None,
        timeout_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._closed = False
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=httpx.Timeout(timeout_seconds),
            auth=auth,
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            transport=transport,
            follow_redirects=True,
        )

    def _client_or_raise(self) -> httpx.AsyncClient:
        if self._closed:
            raise RuntimeError("TaskApiClient is already closed")
        return self._client

    async def aclose(self) -> None:
        if self._closed:
            return
        await self._client.aclose()
        self._closed = True

    def _log_failure(self, *, op: str, started: float, exc: Exception, payload_preview: dict[str, Any] | None) -> None:
        status_code = None
        if isinstance(exc, httpx.HTTPStatusError):
            status_code = exc.response.status_code
        logger.error(
            "task api request failed",
            extra={
                "event": "task_api.request.failed",
                "external_service": "task-api",
                "op": op,
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "status_code": status_code,
                "error_type": type(exc).__name__,
                "error": str(exc),
                "payload_preview": payload_preview,
            },
        )

    async def list_tasks(self) -> list[TaskDefinition]:
        """拉取完整任务目录，包含每个任务的全部版本。"""
        started = time.perf_counter()
        try:
            response = await self._client_or_raise().get(TASKS_PATH)
            response.raise_for_status()
            payload = response.json()
            items = payload.get("value", []) if isinstance(payload, dict) else payload
            return [TaskDefinition.model_validate(item) for item in items]
        except (httpx.HTTPError, ValidationError, ValueError, TypeError) as exc:
            self._log_failure(op="tasks.list", started=started, exc=exc, payload_preview=None)
            raise TaskDownloadError(f"failed to list tasks: {exc}") from exc

    async def download_task(self, task_id: str, version: str, target: Path) -> int:
        """将任务包流式写入 target，返回写入字节数。"""
        started = time.perf_counter()
        preview = {"task_id": task_id, "version": version, "target": str(target)}
        written = 0
        try:
            async with self._client_or_raise().stream("GET", f"{TASKS_PATH}/{task_id}/{version}") as response:
                response.raise_for_status()
                with target.open("wb") as handle:
                    async for chunk in response.aiter_bytes():
                        handle.write(chunk)
                        written += len(chunk)
        except httpx.HTTPError as exc:
            self._log_failure(op="tasks.download", started=started, exc=exc, payload_preview=preview)
            raise TaskDownloadError(f"failed to download task {task_id}@{version}: {exc}") from exc
        logger.debug(
            "task archive downloaded",
            extra={
                "event": "task_api.download.succeeded",
                "external_service": "task-api",
                "op": "tasks.download",
                "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                "payload_preview": {**preview, "bytes": written},
            },
        )
        return written
