"""异步任务定义：处理作业消息，以及对任务包缓存预热执行退避重试。"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from agent_worker.domain.errors import TaskDownloadError
from agent_worker.domain.models import JobMessage
from agent_worker.worker.celery_app import celery_app
from agent_worker.worker.runner import run_message, sync_latest_tasks

logger = logging.getLogger(__name__)


@celery_app.task(bind=True, name="agent_worker.worker.tasks.run_job_message_task")
def run_job_message_task(self, payload: dict[str, Any]) -> str | None:
    """处理一条作业消息；作业本身不重试，异常记录后抛出由子进程回收。"""
    logger.info(
        "worker task started",
        extra={"event": "job.task.started", "payload_preview": {"celery_task_id": self.request.id}},
    )
    try:
        message = JobMessage.model_validate(payload)
        trigger = asyncio.run(run_message(message))
    except Exception as exc:
        logger.exception(
            "worker unhandled",
            extra={"event": "job.task.failed", "error_type": type(exc).__name__, "error": str(exc)},
        )
        raise
    logger.info(
        "worker task finished",
        extra={"event": "job.task.succeeded", "payload_preview": {"trigger": trigger}},
    )
    return trigger.value if trigger is not None else None


@celery_app.task(bind=True, name="agent_worker.worker.tasks.sync_latest_tasks_task")
def sync_latest_tasks_task(self, token: str | None = None) -> list[str]:
    """下载任务目录中每个任务的最新版本，传输错误时按退避策略重试。"""
    try:
        latest = asyncio.run(sync_latest_tasks(token))
    except TaskDownloadError as exc:
        # 首次快速重试，后续拉长退避。
        countdown = 30 if self.request.retries == 0 else 120
        logger.warning(
            "task sync transient error",
            extra={
                "event": "task_cache.sync.retrying",
                "retry": self.request.retries,
                "external_service": "task-api",
                "op": "task_cache.ensure_latest",
                "payload_preview": {"countdown": countdown},
                "error_type": type(exc).__name__,
                "error": str(exc),
            },
        )
        raise self.retry(exc=exc, max_retries=2, countdown=countdown)
    return [f"{task.name}@{task.version}" for task in latest]
