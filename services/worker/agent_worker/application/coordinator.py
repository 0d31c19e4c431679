"""作业生命周期协调器：准备作业环境、启动引擎，并保证作业只收尾一次。

收尾由两个独立信号竞争触发：引擎完成回调与服务端放弃作业事件。先到者
执行收尾（上报结果并排空反馈通道），后到者只记录日志。无论哪条路径、
成功与否，handle() 都只在反馈通道排空之后返回。
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from pathlib import Path

import httpx

from agent_worker.application.engine import JobEngine
from agent_worker.config import Settings
from agent_worker.domain.enums import FinalizeTrigger, LifecycleState, TaskResult
from agent_worker.domain.errors import ConfigurationError
from agent_worker.domain.models import AgentConfiguration, CredentialContext, JobDescription, JobMessage
from agent_worker.infra.logging.context import bind_log_context
from agent_worker.infra.server.auth import build_authorization
from agent_worker.infra.server.feedback import ChannelFactory, FeedbackChannel
from agent_worker.infra.storage.workspace import COLLECTION_URI, compute_workspace

logger = logging.getLogger(__name__)


class FinalizeGuard:
    """作业生命周期状态机；收尾权的检查与占用在同一把锁内完成。"""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._state = LifecycleState.idle
        self._trigger: FinalizeTrigger | None = None

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def trigger(self) -> FinalizeTrigger | None:
        return self._trigger

    def advance(self, state: LifecycleState) -> None:
        with self._lock:
            if self._trigger is None:
                self._state = state

    def try_finalize(self, trigger: FinalizeTrigger) -> bool:
        """抢占收尾权；仅第一个调用者返回 True。"""
        with self._lock:
            if self._trigger is not None:
                return False
            self._trigger = trigger
            self._state = LifecycleState.finalizing
            return True

    def terminate(self) -> None:
        with self._lock:
            self._state = LifecycleState.terminated


class JobLifecycleCoordinator:
    def __init__(
        self,
        *,
        settings: Settings,
        engine: JobEngine,
        channel_factory: ChannelFactory,
    ) -> None:
        self._settings = settings
        self._engine = engine
        self._channel_factory = channel_factory

    async def handle(self, message: JobMessage) -> FinalizeTrigger | None:
        """处理一条入站消息；非 job 消息直接完成，job 消息在收尾排空后返回触发来源。"""
        job = message.job_description()
        if job is None:
            logger.info(
                "non-job message ignored",
                extra={"event": "worker.message.ignored", "payload_preview": {"message_type": message.message_type}},
            )
            return None
        with bind_log_context(
            job_id=job.job_id,
            job_name=job.job_name,
            request_id=str(job.request_id) if job.request_id is not None else None,
        ):
            return await self._run_job(job, message.config)

    async def _run_job(self, job: JobDescription, config: AgentConfiguration | None) -> FinalizeTrigger | None:
        loop = asyncio.get_running_loop()
        guard = FinalizeGuard()
        done: asyncio.Future[None] = loop.create_future()
        finalizers: list[concurrent.futures.Future[None]] = []

        guard.advance(LifecycleState.preparing)
        logger.info("job message received", extra={"event": "job.received", "payload_preview": {"tasks": len(job.tasks)}})
        compute_workspace(job, self._work_folder(config))

        authorization: httpx.Auth | None = None
        try:
            authorization = build_authorization(job)
        except ConfigurationError as exc:
            # 不在此层中断：缺少授权时作业会在引擎内失败并按正常路径收尾。
            logger.error(
                "authorization handle unavailable",
                extra={"event": "job.auth.missing", "error_type": type(exc).__name__, "error": str(exc)},
            )
        guard.advance(LifecycleState.auth_resolved)

        agent_url = self._agent_url(config)
        task_url = job.environment.variables[COLLECTION_URI]
        channel = self._channel_factory(agent_url, task_url, job, authorization)
        channel.start()

        def on_engine_complete(error: BaseException | None, result: TaskResult | None) -> None:
            logger.info("job completed", extra={"event": "job.engine.completed", "payload_preview": {"result": result}})
            if error is not None:
                logger.error(
                    "job engine reported an error",
                    extra={"event": "job.engine.failed", "error_type": type(error).__name__, "error": str(error)},
                )
            if not guard.try_finalize(FinalizeTrigger.engine_completed):
                # 服务端已放弃该作业，放弃路径正在排空通道。
                logger.info("engine completion ignored after abandonment", extra={"event": "job.engine.late"})
                return
            finalizers.append(
                asyncio.run_coroutine_threadsafe(
                    self._finalize_completed(channel, result or TaskResult.failed, guard, done),
                    loop,
                )
            )

        def on_abandoned() -> None:
            if not guard.try_finalize(FinalizeTrigger.abandoned):
                # 引擎已完成，完成路径负责排空通道。
                logger.info("abandonment ignored after completion", extra={"event": "job.abandoned.late"})
                return
            finalizers.append(
                asyncio.run_coroutine_threadsafe(self._finalize_abandoned(channel, guard, done), loop)
            )

        channel.queue_status(f"Running job: {job.job_name}")
        self._engine.start(job, authorization, CredentialContext.from_config(config), on_engine_complete)
        guard.advance(LifecycleState.running)
        channel.on_abandoned(on_abandoned)
        logger.info("job engine started", extra={"event": "job.engine.started"})

        await done
        return guard.trigger

    async def _finalize_completed(
        self,
        channel: FeedbackChannel,
        result: TaskResult,
        guard: FinalizeGuard,
        done: asyncio.Future[None],
    ) -> None:
        try:
            try:
                await channel.finish_job(result)
            except Exception as exc:
                logger.error(
                    "job finish failed",
                    extra={"event": "job.finish.failed", "error_type": type(exc).__name__, "error": str(exc)},
                )
            finally:
                logger.info(
                    "job finished",
                    extra={"event": "job.finished", "payload_preview": {"result": result.value}},
                )
            await self._drain(channel)
        finally:
            self._resolve(guard, done)

    async def _finalize_abandoned(
        self,
        channel: FeedbackChannel,
        guard: FinalizeGuard,
        done: asyncio.Future[None],
    ) -> None:
        try:
            logger.error("job abandoned by the server", extra={"event": "job.abandoned"})
            await self._drain(channel)
        finally:
            self._resolve(guard, done)

    @staticmethod
    async def _drain(channel: FeedbackChannel) -> None:
        try:
            await channel.drain()
            logger.info("service channel drained", extra={"event": "job.channel.drained"})
        except Exception as exc:
            logger.error(
                "service channel drain failed",
                extra={"event": "job.channel.drain_failed", "error_type": type(exc).__name__, "error": str(exc)},
            )

    @staticmethod
    def _resolve(guard: FinalizeGuard, done: asyncio.Future[None]) -> None:
        guard.terminate()
        if not done.done():
            done.set_result(None)

    def _work_folder(self, config: AgentConfiguration | None) -> Path:
        if config is not None and config.settings.work_folder:
            return Path(config.settings.work_folder)
        return self._settings.work_folder

    def _agent_url(self, config: AgentConfiguration | None) -> str:
        if config is not None and config.settings.server_url:
            return config.settings.server_url
        return self._settings.server_url
