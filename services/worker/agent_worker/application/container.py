"""依赖容器模块，负责单例化创建引擎、反馈通道工厂与协调器。"""

from __future__ import annotations

from functools import lru_cache

import httpx

from agent_worker.application.coordinator import JobLifecycleCoordinator
from agent_worker.application.engine import BundleJobEngine, CatalogFactory
from agent_worker.config import get_settings
from agent_worker.domain.models import JobDescription
from agent_worker.infra.server.feedback import ChannelFactory, FeedbackChannel, HttpFeedbackChannel
from agent_worker.infra.server.task_api import TaskApiClient
from agent_worker.infra.storage.task_cache import TaskBundleCache, TaskCatalog


@lru_cache(maxsize=1)
def get_catalog_factory() -> CatalogFactory:
    """获取任务目录客户端工厂；每个作业按自身授权句柄创建客户端。"""
    settings = get_settings()

    def build(auth: httpx.Auth | None) -> TaskApiClient:
        return TaskApiClient(settings.server_url, auth=auth, timeout_seconds=settings.request_timeout_seconds)

    return build


@lru_cache(maxsize=1)
def get_channel_factory() -> ChannelFactory:
    """获取反馈通道工厂。"""
    settings = get_settings()

    def build(agent_url: str, task_url: str, job: JobDescription, auth: httpx.Auth | None) -> FeedbackChannel:
        return HttpFeedbackChannel(
            agent_url,
            task_url,
            job,
            auth,
            flush_interval_seconds=settings.feedback_flush_interval_seconds,
            lock_renewal_interval_seconds=settings.lock_renewal_interval_seconds,
            timeout_seconds=settings.request_timeout_seconds,
        )

    return build


@lru_cache(maxsize=1)
def get_engine() -> BundleJobEngine:
    """获取默认作业引擎单例。"""
    settings = get_settings()
    return BundleJobEngine(
        task_root=settings.task_root(),
        catalog_factory=get_catalog_factory(),
        entry_point=settings.task_entry_point,
        concurrency=settings.task_download_concurrency,
        version_ordering=settings.version_ordering,
    )


@lru_cache(maxsize=1)
def get_coordinator() -> JobLifecycleCoordinator:
    """获取作业生命周期协调器单例。"""
    return JobLifecycleCoordinator(
        settings=get_settings(),
        engine=get_engine(),
        channel_factory=get_channel_factory(),
    )


def build_task_cache(catalog: TaskCatalog) -> TaskBundleCache:
    """按当前配置构建任务包缓存；缓存内的锁绑定调用方所在的事件循环。"""
    settings = get_settings()
    return TaskBundleCache(
        settings.task_root(),
        catalog,
        concurrency=settings.task_download_concurrency,
        version_ordering=settings.version_ordering,
    )


def shutdown_container_resources() -> None:
    """清理依赖容器缓存，确保后续调用可重新构建全新实例。"""
    for provider in (
        get_coordinator,
        get_engine,
        get_channel_factory,
        get_catalog_factory,
    ):
        provider.cache_clear()
