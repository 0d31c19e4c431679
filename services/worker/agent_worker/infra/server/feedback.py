"""反馈通道：批量上报作业状态、续租作业锁（404 视为服务端放弃作业）、上报最终结果并排空。"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import httpx

from agent_worker.domain.enums import TaskResult
from agent_worker.domain.errors import FinalizeError
from agent_worker.domain.models import JobDescription

logger = logging.getLogger(__name__)

AbandonedCallback = Callable[[], None]


class FeedbackChannel(Protocol):
    """协调器依赖的反馈通道契约。"""

    def start(self) -> None: ...

    def on_abandoned(self, callback: AbandonedCallback) -> None: ...

    def queue_status(self, message: str) -> None: ...

    async def finish_job(self, result: TaskResult) -> None: ...

    async def drain(self) -> None: ...


ChannelFactory = Callable[[str, str, JobDescription, httpx.Auth | None], FeedbackChannel]


class HttpFeedbackChannel:
    """基于 httpx 的默认反馈通道实现。"""

    def __init__(
        self,
        agent_url: str,
        task_url: str,
        job: JobDescription,
        auth: httpx.Auth | None = None,
        *,
        flush_interval_seconds: float = 1.0,
        lock_renewal_interval_seconds: float = 60.0,
        timeout_seconds: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._agent_url = agent_url.rstrip("/")
        self._task_url = task_url.rstrip("/")
        self._job = job
        self._flush_interval = flush_interval_seconds
        self._renewal_interval = lock_renewal_interval_seconds
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds), auth=auth, transport=transport)
        self._pending: list[dict[str, Any]] = []
        self._callbacks: list[AbandonedCallback] = []
        self._abandoned = False
        self._flush_task: asyncio.Task[None] | None = None
        self._renew_task: asyncio.Task[None] | None = None
        self._drained = False

    @property
    def _request_url(self) -> str:
        return f"{self._agent_url}/_apis/distributedtask/requests/{self._job.request_id}"

    @property
    def _feed_url(self) -> str:
        return f"{self._task_url}/_apis/distributedtask/jobs/{self._job.job_id}/feed"

    def start(self) -> None:
        """启动后台上报与续租循环；必须在事件循环内调用。"""
        if self._flush_task is None:
            self._flush_task = asyncio.create_task(self._flush_loop())
        if self._renew_task is None and self._job.request_id is not None:
            self._renew_task = asyncio.create_task(self._renew_loop())

    def on_abandoned(self, callback: AbandonedCallback) -> None:
        self._callbacks.append(callback)

    def queue_status(self, message: str) -> None:
        if self._drained:
            return
        self._pending.append({"timestamp": _utcnow_iso(), "message": message})

    async def finish_job(self, result: TaskResult) -> None:
        """上报作业最终结果；失败统一转换为 FinalizeError。"""
        if self._job.request_id is None:
            return
        try:
            response = await self._client.post(
                f"{self._request_url}/finish",
                params={"lockToken": self._job.lock_token} if self._job.lock_token else None,
                json={"result": result.value, "resultCode": result.code, "finishTime": _utcnow_iso()},
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise FinalizeError(f"failed to finish job request {self._job.request_id}: {exc}") from exc

    async def drain(self) -> None:
        """停止后台循环，上报剩余状态并关闭连接；重复调用无副作用。"""
        if self._drained:
            return
        self._drained = True
        background = [
            task
            for task in (self._renew_task, self._flush_task)
            if task is not None and task is not asyncio.current_task()
        ]
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        try:
            await self._flush()
        except httpx.HTTPError as exc:
            raise FinalizeError(f"failed to flush feedback on drain: {exc}") from exc
        finally:
            await self._client.aclose()

    async def _flush(self) -> None:
        if not self._pending:
            return
        batch, self._pending = self._pending, []
        try:
            response = await self._client.post(self._feed_url, json={"count": len(batch), "value": batch})
            response.raise_for_status()
        except BaseException:
            # 发送失败或被取消时放回队首，由下一次 flush（包括 drain）重发。
            self._pending[:0] = batch
            raise

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            try:
                await self._flush()
            except httpx.HTTPError as exc:
                logger.warning(
                    "feedback flush failed",
                    extra={
                        "event": "feedback.flush.failed",
                        "external_service": "feedback",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )

    async def _renew_loop(self) -> None:
        while True:
            await asyncio.sleep(self._renewal_interval)
            try:
                response = await self._client.post(
                    f"{self._request_url}/renew",
                    params={"lockToken": self._job.lock_token} if self._job.lock_token else None,
                )
            except httpx.HTTPError as exc:
                logger.warning(
                    "job lock renewal failed",
                    extra={
                        "event": "feedback.renew.failed",
                        "external_service": "feedback",
                        "error_type": type(exc).__name__,
                        "error": str(exc),
                    },
                )
                continue
            if response.status_code == httpx.codes.NOT_FOUND:
                self._emit_abandoned()
                return
            if response.is_error:
                logger.warning(
                    "job lock renewal rejected",
                    extra={"event": "feedback.renew.rejected", "status_code": response.status_code},
                )

    def _emit_abandoned(self) -> None:
        if self._abandoned:
            return
        self._abandoned = True
        for callback in list(self._callbacks):
            callback()


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
