"""测试桩：任务目录、作业引擎与反馈通道的内存实现，以及压缩包与轮询辅助函数。"""

from __future__ import annotations

import asyncio
import io
from pathlib import Path
from typing import Any, Callable
from zipfile import ZipFile

from agent_worker.domain.enums import TaskResult
from agent_worker.domain.errors import TaskDownloadError
from agent_worker.domain.models import TaskDefinition


def make_zip(files: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with ZipFile(buffer, "w") as zipf:
        for name, content in files.items():
            zipf.writestr(name, content)
    return buffer.getvalue()


async def wait_until(condition: Callable[[], bool], attempts: int = 200) -> None:
    for _ in range(attempts):
        if condition():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition not reached")


class StubCatalog:
    """测试用任务目录桩，记录每次下载请求。"""

    def __init__(
        self,
        *,
        definitions: list[TaskDefinition] | None = None,
        archives: dict[tuple[str, str], bytes] | None = None,
        failing: set[tuple[str, str]] | None = None,
        fail_list: bool = False,
    ) -> None:
        self.definitions = definitions or []
        self.archives = archives or {}
        self.failing = failing or set()
        self.fail_list = fail_list
        self.downloads: list[tuple[str, str]] = []
        self.closed = False

    async def list_tasks(self) -> list[TaskDefinition]:
        if self.fail_list:
            raise TaskDownloadError("catalog unavailable")
        return list(self.definitions)

    async def download_task(self, task_id: str, version: str, target: Path) -> int:
        self.downloads.append((task_id, version))
        await asyncio.sleep(0)
        if (task_id, version) in self.failing:
            target.write_bytes(b"partial")
            raise TaskDownloadError(f"download failed: {task_id}@{version}")
        data = self.archives.get((task_id, version), make_zip({"task.json": f'{{"id": "{task_id}"}}'}))
        target.write_bytes(data)
        return len(data)

    async def aclose(self) -> None:
        self.closed = True


class StubEngine:
    """测试用作业引擎桩；可在 start 内同步回调，也可由测试手动触发完成。"""

    def __init__(self, immediate_result: TaskResult | None = None) -> None:
        self.immediate_result = immediate_result
        self.callback: Callable[[BaseException | None, TaskResult | None], None] | None = None
        self.authorization: Any = "unset"
        self.credentials: Any = "unset"
        self.job: Any = None

    def start(self, job, authorization, credentials, on_complete) -> None:
        self.job = job
        self.authorization = authorization
        self.credentials = credentials
        self.callback = on_complete
        if self.immediate_result is not None:
            on_complete(None, self.immediate_result)

    def complete(self, error: BaseException | None = None, result: TaskResult | None = TaskResult.succeeded) -> None:
        assert self.callback is not None
        self.callback(error, result)


class StubChannel:
    """测试用反馈通道桩，记录 finish/drain 调用并可手动触发放弃事件。"""

    def __init__(self, *, finish_error: Exception | None = None, drain_error: Exception | None = None) -> None:
        self.finish_error = finish_error
        self.drain_error = drain_error
        self.started = False
        self.finished: list[TaskResult] = []
        self.drain_calls = 0
        self.statuses: list[str] = []
        self.callbacks: list[Callable[[], None]] = []
        self.factory_args: tuple[Any, ...] | None = None

    def start(self) -> None:
        self.started = True

    def on_abandoned(self, callback: Callable[[], None]) -> None:
        self.callbacks.append(callback)

    def queue_status(self, message: str) -> None:
        self.statuses.append(message)

    async def finish_job(self, result: TaskResult) -> None:
        await asyncio.sleep(0)
        self.finished.append(result)
        if self.finish_error is not None:
            raise self.finish_error

    async def drain(self) -> None:
        await asyncio.sleep(0)
        self.drain_calls += 1
        if self.drain_error is not None:
            raise self.drain_error

    def emit_abandoned(self) -> None:
        for callback in list(self.callbacks):
            callback()

