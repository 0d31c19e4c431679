"""全局配置加载模块：从环境变量构建 worker 运行参数并提供缓存访问。"""

from __future__ import annotations

import errno
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _csv_to_list(value: str) -> list[str]:
    """将逗号分隔字符串转换为去空白列表。"""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Worker 运行配置对象，从环境变量读取并提供类型化访问。"""
    model_config = SettingsConfigDict(
        env_prefix="AGENT_WORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    app_name: str = "Agent Worker"
    environment: str = "dev"

    server_url: str = "http://127.0.0.1:8080/tfs"
    work_folder: Path = Field(default=Path("./_work"))
    request_timeout_seconds: int = 60

    # 任务包缓存
    task_download_concurrency: int = 4
    version_ordering: Literal["semantic", "lexical"] = "semantic"
    task_entry_point: str = "run"

    # 反馈通道
    feedback_flush_interval_seconds: float = 1.0
    lock_renewal_interval_seconds: float = 60.0

    redis_url: str = "redis://localhost:6379/0"
    celery_task_always_eager: bool = False

    log_dir: Path = Field(default=Path("./_diag"))
    log_level: str = "INFO"
    log_debug_modules: str = ""
    log_debug_job_ids: str = ""
    log_redaction_mode: str = "default"
    log_payload_preview_chars: int = 2048
    log_max_bytes: int = 20 * 1024 * 1024
    log_backup_count: int = 5

    def log_debug_modules_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_modules)

    def log_debug_job_ids_list(self) -> list[str]:
        return _csv_to_list(self.log_debug_job_ids)

    def task_root(self, work_folder: Path | None = None) -> Path:
        return (work_folder or self.work_folder) / "tasks"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """构建并缓存 Settings，同时确保工作根目录可写。"""
    settings = Settings()
    # 相对路径统一按当前工作目录解析，避免不同启动方式下语义漂移。
    if not settings.work_folder.is_absolute():
        settings.work_folder = (Path.cwd() / settings.work_folder).resolve()
    try:
        settings.work_folder.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        if exc.errno not in {errno.EACCES, errno.EPERM, errno.EROFS}:
            raise
        # 容器只读或权限受限时回退到当前工作目录下的本地路径。
        fallback = (Path.cwd() / "_work").resolve()
        fallback.mkdir(parents=True, exist_ok=True)
        settings.work_folder = fallback
    return settings
