"""任务包缓存：保证作业所需任务包已落盘，负责下载、解压、失败回滚与最新版本解析。"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
from pathlib import Path
from typing import Any, Iterable, Literal, Protocol
from zipfile import BadZipFile, ZipFile

from filelock import FileLock, Timeout

from agent_worker.domain.errors import TaskExtractionError
from agent_worker.domain.models import TaskDefinition, TaskInstance
from agent_worker.infra.logging.context import bind_log_context

logger = logging.getLogger(__name__)

VersionOrdering = Literal["semantic", "lexical"]

LOCK_POLL_INTERVAL_SECONDS = 0.1


class TaskCatalog(Protocol):
    """任务目录接口：TaskApiClient 的最小调用契约。"""

    async def list_tasks(self) -> list[TaskDefinition]: ...

    async def download_task(self, task_id: str, version: str, target: Path) -> int: ...

    async def aclose(self) -> None: ...


def _version_component(piece: str) -> tuple[int, int, str]:
    # 数字段按整数比较，且排在字母段之前。
    if piece.isdigit():
        return 0, int(piece), ""
    return 1, 0, piece


def version_key(version: str) -> tuple[Any, ...]:
    """语义化版本排序键："10" > "9"，"1.0" == "1.0.0"，预发布版本低于正式版本。"""
    text = version.strip().split("+", 1)[0]
    core, _, prerelease = text.partition("-")
    numbers = [_version_component(piece) for piece in core.split(".")]
    while numbers and numbers[-1] == (0, 0, ""):
        numbers.pop()
    pre = tuple(_version_component(piece) for piece in prerelease.split(".")) if prerelease else ()
    return tuple(numbers), 0 if prerelease else 1, pre


def _sort_key(version: str, ordering: VersionOrdering) -> Any:
    if ordering == "lexical":
        # 兼容旧行为：版本按原始字符串比较。
        return version
    return version_key(version)


def select_latest(definitions: Iterable[TaskDefinition], ordering: VersionOrdering = "semantic") -> list[TaskInstance]:
    """每个任务 id 仅保留最大版本，保持首次出现的顺序。"""
    latest: dict[str, TaskDefinition] = {}
    for definition in definitions:
        current = latest.get(definition.id)
        if current is None or _sort_key(definition.version, ordering) > _sort_key(current.version, ordering):
            latest[definition.id] = definition
    return [definition.to_instance() for definition in latest.values()]


def dedupe_tasks(tasks: Iterable[TaskInstance]) -> list[TaskInstance]:
    """按 (id, version) 去重，保留首次出现的条目。"""
    seen: set[tuple[str, str]] = set()
    unique: list[TaskInstance] = []
    for task in tasks:
        if task.key in seen:
            continue
        seen.add(task.key)
        unique.append(task)
    return unique


def extract_archive(archive: Path, destination: Path) -> None:
    """解压 zip 任务包；成员路径越出目标目录或压缩包损坏时抛出 TaskExtractionError。"""
    destination.mkdir(parents=True, exist_ok=True)
    root = destination.resolve()
    try:
        with ZipFile(archive) as zipf:
            for member in zipf.namelist():
                target = (root / member).resolve()
                if target != root and root not in target.parents:
                    raise TaskExtractionError(f"archive member escapes bundle directory: {member}")
            zipf.extractall(root)
    except (BadZipFile, OSError) as exc:
        raise TaskExtractionError(f"failed to extract {archive.name}: {exc}") from exc


async def _acquire_file_lock(lock: FileLock, poll_interval: float = LOCK_POLL_INTERVAL_SECONDS) -> None:
    """非阻塞轮询获取文件锁；等待期间被取消时不会留下挂起的加锁请求。"""
    while True:
        try:
            lock.acquire(timeout=0)
            return
        except Timeout:
            await asyncio.sleep(poll_interval)


def _remove_path(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists():
        path.unlink(missing_ok=True)


class TaskBundleCache:
    """任务包本地缓存，目录布局为 <root>/<taskName>/<version>/。

    同一进程内按 (id, version) 串行化下载；跨进程通过 <version>.lock 文件锁
    保证同一缓存条目只有一个写入者。
    """

    def __init__(
        self,
        task_root: Path,
        catalog: TaskCatalog,
        *,
        concurrency: int = 4,
        version_ordering: VersionOrdering = "semantic",
    ) -> None:
        self._task_root = task_root.resolve()
        self._catalog = catalog
        self._semaphore = asyncio.Semaphore(max(1, concurrency))
        self._version_ordering = version_ordering
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def task_root(self) -> Path:
        return self._task_root

    def get_task_path(self, task: TaskInstance) -> Path:
        return self._task_root / task.name / task.version

    def exists(self, task: TaskInstance) -> bool:
        return self.get_task_path(task).is_dir()

    async def ensure(self, task: TaskInstance) -> None:
        """任务包缺失时下载并解压；已存在时不发起任何网络请求。"""
        if self.exists(task):
            return
        lock = self._locks.setdefault(task.key, asyncio.Lock())
        async with lock:
            if self.exists(task):
                return
            task_path = self.get_task_path(task)
            task_path.parent.mkdir(parents=True, exist_ok=True)
            file_lock = FileLock(str(task_path.with_name(f"{task.version}.lock")), thread_local=False)
            await _acquire_file_lock(file_lock)
            try:
                # 其他进程可能已在持锁期间完成下载。
                if self.exists(task):
                    return
                async with self._semaphore:
                    await self._download(task)
            finally:
                file_lock.release()

    async def ensure_all(self, tasks: Iterable[TaskInstance]) -> None:
        """去重后并发确保所有任务包；首个失败向上抛出，其余进行中的下载被取消并各自回滚。"""
        unique = dedupe_tasks(tasks)
        if not unique:
            return
        pending = [asyncio.create_task(self.ensure(task)) for task in unique]
        try:
            await asyncio.gather(*pending)
        except Exception:
            for item in pending:
                item.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise

    async def ensure_latest(self) -> list[TaskInstance]:
        """列举任务目录，取每个任务的最新版本并确保其已落盘。"""
        definitions = await self._catalog.list_tasks()
        latest = select_latest(definitions, self._version_ordering)
        logger.info(
            "latest task versions resolved",
            extra={
                "event": "task_cache.latest.resolved",
                "payload_preview": {
                    "catalog_entries": len(definitions),
                    "latest": [f"{task.name}@{task.version}" for task in latest],
                },
            },
        )
        await self.ensure_all(latest)
        return latest

    async def _download(self, task: TaskInstance) -> None:
        task_path = self.get_task_path(task)
        archive = task_path.with_name(f"{task.version}.zip")
        staging = task_path.with_name(f"{task.version}.extracting")
        started = time.perf_counter()
        with bind_log_context(task_id=task.id):
            logger.info(
                "downloading task",
                extra={
                    "event": "task_cache.download.started",
                    "payload_preview": {"task": task.name, "version": task.version, "path": str(task_path)},
                },
            )
            _remove_path(staging)
            try:
                await self._catalog.download_task(task.id, task.version, archive)
                await asyncio.to_thread(extract_archive, archive, staging)
                os.replace(staging, task_path)
            except BaseException as exc:
                # 回滚：不在缓存中留下半成品目录或压缩包。
                for path in (staging, task_path, archive):
                    _remove_path(path)
                logger.error(
                    "task download rolled back",
                    extra={
                        "event": "task_cache.download.failed",
                        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                raise
            archive.unlink(missing_ok=True)
            logger.info(
                "task ready",
                extra={
                    "event": "task_cache.download.succeeded",
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
