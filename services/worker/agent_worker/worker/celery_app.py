"""Celery 应用配置：单队列、每个子进程只处理一个作业，进程级日志与资源回收。"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import setup_logging, worker_process_init, worker_process_shutdown

from agent_worker.application.container import shutdown_container_resources
from agent_worker.config import Settings, get_settings
from agent_worker.infra.logging.setup import configure_logging, shutdown_logging

JOB_QUEUE = "jobs"
TASK_NAMES = (
    "agent_worker.worker.tasks.run_job_message_task",
    "agent_worker.worker.tasks.sync_latest_tasks_task",
)

logger = logging.getLogger(__name__)


def create_celery_app(settings: Settings) -> Celery:
    app = Celery("agent_worker", broker=settings.redis_url, backend=settings.redis_url)
    app.conf.update(
        imports=("agent_worker.worker.tasks",),
        task_default_queue=JOB_QUEUE,
        task_routes={name: {"queue": JOB_QUEUE} for name in TASK_NAMES},
        worker_prefetch_multiplier=1,
        # 作业处理完即回收子进程，作业状态不跨作业复用。
        worker_max_tasks_per_child=1,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        broker_connection_retry_on_startup=True,
        task_track_started=True,
    )
    if settings.celery_task_always_eager:
        app.conf.update(task_always_eager=True, task_eager_propagates=True)
    return app


settings = get_settings()
celery_app = create_celery_app(settings)


@setup_logging.connect
def _configure_main_logging(**_: object) -> None:
    """接管 Celery 默认日志配置，主进程写入 worker 角色目录。"""
    configure_logging(settings, process_role="worker")
    logger.info(
        "celery app configured",
        extra={
            "event": "celery.config.loaded",
            "external_service": "redis",
            "op": "worker",
            "payload_preview": {
                "broker": settings.redis_url,
                "queue": JOB_QUEUE,
                "always_eager": settings.celery_task_always_eager,
            },
        },
    )


@worker_process_init.connect
def _configure_child_logging(**_: object) -> None:
    # fork 后父进程的队列监听线程不会随之复制，子进程需重新启动。
    configure_logging(settings, process_role="worker")


@worker_process_shutdown.connect
def _shutdown_worker_resources(**_: object) -> None:
    """子进程退出时释放依赖容器缓存并刷出日志。"""
    shutdown_container_resources()
    shutdown_logging()
