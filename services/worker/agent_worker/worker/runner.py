"""进程入口共用的异步执行函数。"""

from __future__ import annotations

from agent_worker.application.container import build_task_cache, get_catalog_factory, get_coordinator
from agent_worker.domain.enums import FinalizeTrigger
from agent_worker.domain.models import JobMessage, TaskInstance
from agent_worker.infra.server.auth import BearerAuth


async def run_message(message: JobMessage) -> FinalizeTrigger | None:
    return await get_coordinator().handle(message)


async def sync_latest_tasks(token: str | None = None) -> list[TaskInstance]:
    """预热任务包缓存：下载任务目录中每个任务的最新版本。"""
    catalog = get_catalog_factory()(BearerAuth(token) if token else None)
    try:
        return await build_task_cache(catalog).ensure_latest()
    finally:
        await catalog.aclose()
