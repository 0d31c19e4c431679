"""作业引擎：准备任务包并按顺序执行每个任务包的入口程序。"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import stat
import time
from pathlib import Path
from typing import Callable, Protocol

import httpx

from agent_worker.domain.enums import MaskType, TaskResult
from agent_worker.domain.errors import EngineError
from agent_worker.domain.models import CredentialContext, JobDescription, MaskHint, TaskInstance
from agent_worker.infra.logging.context import bind_log_context
from agent_worker.infra.storage.task_cache import TaskBundleCache, TaskCatalog, VersionOrdering
from agent_worker.infra.storage.workspace import BUILD_DIRECTORY

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[BaseException | None, TaskResult], None]
CatalogFactory = Callable[[httpx.Auth | None], TaskCatalog]

MASK_REPLACEMENT = "********"


class JobEngine(Protocol):
    """协调器依赖的作业引擎契约：启动后通过回调报告 (error, result)。"""

    def start(
        self,
        job: JobDescription,
        authorization: httpx.Auth | None,
        credentials: CredentialContext | None,
        on_complete: CompletionCallback,
    ) -> None: ...


def variables_to_env(variables: dict[str, str]) -> dict[str, str]:
    """作业变量转为环境变量：agent.buildDirectory -> AGENT_BUILDDIRECTORY。"""
    return {name.replace(".", "_").upper(): value for name, value in variables.items()}


class SecretMasker:
    """按作业掩码提示遮蔽输出中的敏感值。"""

    def __init__(self, hints: list[MaskHint], variables: dict[str, str]) -> None:
        values: list[str] = []
        self._patterns: list[re.Pattern[str]] = []
        for hint in hints:
            if hint.type is MaskType.variable:
                value = variables.get(hint.value)
                if value:
                    values.append(value)
                continue
            try:
                self._patterns.append(re.compile(hint.value))
            except re.error as exc:
                logger.warning(
                    "invalid mask pattern ignored",
                    extra={"event": "engine.mask.invalid", "error": str(exc)},
                )
        # 长值优先替换，避免短值先替换后破坏长值匹配。
        self._values = sorted(set(values), key=len, reverse=True)

    def mask(self, text: str) -> str:
        for value in self._values:
            text = text.replace(value, MASK_REPLACEMENT)
        for pattern in self._patterns:
            text = pattern.sub(MASK_REPLACEMENT, text)
        return text


class BundleJobEngine:
    """默认作业引擎：确保任务包已缓存，随后依次以子进程执行各任务入口。"""

    def __init__(
        self,
        *,
        task_root: Path,
        catalog_factory: CatalogFactory,
        entry_point: str = "run",
        concurrency: int = 4,
        version_ordering: VersionOrdering = "semantic",
    ) -> None:
        self._task_root = task_root
        self._catalog_factory = catalog_factory
        self._entry_point = entry_point
        self._concurrency = concurrency
        self._version_ordering = version_ordering
        self._running: set[asyncio.Task[None]] = set()

    def start(
        self,
        job: JobDescription,
        authorization: httpx.Auth | None,
        credentials: CredentialContext | None,
        on_complete: CompletionCallback,
    ) -> None:
        task = asyncio.create_task(self._run(job, authorization, credentials, on_complete))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(
        self,
        job: JobDescription,
        authorization: httpx.Auth | None,
        credentials: CredentialContext | None,
        on_complete: CompletionCallback,
    ) -> None:
        error: BaseException | None = None
        result = TaskResult.succeeded
        catalog = self._catalog_factory(authorization)
        try:
            cache = TaskBundleCache(
                self._task_root,
                catalog,
                concurrency=self._concurrency,
                version_ordering=self._version_ordering,
            )
            await cache.ensure_all(job.tasks)
            masker = SecretMasker(job.environment.mask, job.environment.variables)
            for task in job.tasks:
                exit_code = await self._run_task(cache.get_task_path(task), task, job, credentials, masker)
                if exit_code != 0:
                    result = TaskResult.failed
                    error = EngineError(f"task {task.name}@{task.version} exited with code {exit_code}")
                    break
        except Exception as exc:
            error, result = exc, TaskResult.failed
        finally:
            await catalog.aclose()
        on_complete(error, result)

    async def _run_task(
        self,
        bundle_dir: Path,
        task: TaskInstance,
        job: JobDescription,
        credentials: CredentialContext | None,
        masker: SecretMasker,
    ) -> int:
        entry = bundle_dir / self._entry_point
        if not entry.is_file():
            raise EngineError(f"task bundle has no entry point: {entry}")
        # zip 解压不保留权限位。
        entry.chmod(entry.stat().st_mode | stat.S_IXUSR)

        variables = job.environment.variables
        cwd = Path(variables.get(BUILD_DIRECTORY) or bundle_dir)
        cwd.mkdir(parents=True, exist_ok=True)
        env = {**os.environ, **variables_to_env(variables)}
        if credentials is not None:
            env.update(credentials.as_env())

        started = time.perf_counter()
        with bind_log_context(task_id=task.id):
            logger.info(
                "task started",
                extra={"event": "engine.task.started", "payload_preview": {"task": task.name, "version": task.version}},
            )
            process = await asyncio.create_subprocess_exec(
                str(entry),
                cwd=str(cwd),
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
            if process.stdout is not None:
                async for raw_line in process.stdout:
                    line = raw_line.decode("utf-8", errors="replace").rstrip()
                    logger.info(masker.mask(line), extra={"event": "engine.task.output"})
            exit_code = await process.wait()
            logger.info(
                "task finished",
                extra={
                    "event": "engine.task.finished",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                    "payload_preview": {"task": task.name, "exit_code": exit_code},
                },
            )
        return exit_code
