"""命令行入口：读取一条作业消息并处理，完成（或出现未捕获异常）后退出进程。"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
import traceback

import click

from agent_worker.application.container import shutdown_container_resources
from agent_worker.config import get_settings
from agent_worker.domain.models import JobMessage
from agent_worker.infra.logging.setup import configure_logging, shutdown_logging
from agent_worker.worker.runner import run_message, sync_latest_tasks

logger = logging.getLogger(__name__)

EXIT_FAULT = 1
EXIT_INTERRUPTED = 130


def _report_unhandled(exc: BaseException) -> None:
    # 诊断日志可能尚未初始化或已损坏，先写控制台兜底。
    click.echo(f"unhandled: {exc}", err=True)
    click.echo("".join(traceback.format_exception(exc)), err=True)
    logger.error(
        "worker unhandled",
        exc_info=exc,
        extra={"event": "worker.unhandled", "error_type": type(exc).__name__, "error": str(exc)},
    )


def _run_until_exit(coro_factory) -> None:
    settings = get_settings()
    configure_logging(settings, process_role="worker")
    exit_code = 0
    try:
        asyncio.run(coro_factory())
    except KeyboardInterrupt:
        logger.info("shutting down agent", extra={"event": "worker.interrupted"})
        exit_code = EXIT_INTERRUPTED
    except Exception as exc:
        _report_unhandled(exc)
        exit_code = EXIT_FAULT
    finally:
        shutdown_container_resources()
        shutdown_logging()
    sys.exit(exit_code)


@click.group()
def agent_worker() -> None:
    """Agent worker process."""


@agent_worker.command("run")
@click.option(
    "--message-file",
    type=click.File("r", encoding="utf-8"),
    default="-",
    show_default=True,
    help="JSON job message; '-' reads stdin.",
)
def run(message_file) -> None:
    """Handle a single job message, then exit."""
    raw = message_file.read()

    async def handle() -> None:
        message = JobMessage.model_validate(json.loads(raw))
        await run_message(message)

    _run_until_exit(handle)


@agent_worker.command("sync-tasks")
@click.option("--token", envvar="AGENT_WORKER_ACCESS_TOKEN", default=None, help="Bearer token for the task catalog.")
def sync_tasks(token: str | None) -> None:
    """Download the latest version of every task in the catalog."""

    async def sync() -> None:
        latest = await sync_latest_tasks(token)
        for task in latest:
            click.echo(f"{task.name}@{task.version}")

    _run_until_exit(sync)


def main() -> None:
    agent_worker()
