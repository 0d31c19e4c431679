"""工作区解析：由作业标识计算构建目录，并把路径回写到作业变量。"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path

from agent_worker.domain.errors import ConfigurationError
from agent_worker.domain.models import JobDescription, WorkspacePaths

logger = logging.getLogger(__name__)

# 读取的系统变量
SYSTEM = "system"
COLLECTION_ID = "system.collectionId"
DEFINITION_ID = "system.definitionId"
COLLECTION_URI = "system.teamFoundationCollectionUri"

# 回写的 agent/build 变量
WORKING_DIRECTORY = "agent.workingDirectory"
BUILD_DIRECTORY = "agent.buildDirectory"
STAGING_DIRECTORY = "build.stagingDirectory"

HASH_SEPARATOR = ":"


def sha256_text(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_hash_input(collection_id: str, definition_id: str, endpoint_urls: list[str]) -> str:
    """拼接哈希输入；端点 URL 按原顺序全部纳入，不去重。"""
    parts = [collection_id, definition_id, *endpoint_urls]
    return HASH_SEPARATOR.join(parts)


def _require(variables: dict[str, str], name: str) -> str:
    value = variables.get(name)
    if not value:
        raise ConfigurationError(f"job variable is required for workspace resolution: {name}")
    return value


def backfill_collection_uri(job: JobDescription) -> str:
    """collection URI 缺失时依次从系统连接 URL、授权服务地址补齐。"""
    variables = job.environment.variables
    if not variables.get(COLLECTION_URI):
        connection = job.environment.system_connection
        variables[COLLECTION_URI] = connection.url if connection else job.authorization.server_url
    return variables[COLLECTION_URI]


def compute_workspace(job: JobDescription, work_folder: Path) -> WorkspacePaths:
    """计算作业工作区路径并写回变量表。

    相同的 (collectionId, definitionId, 端点 URL 序列) 总是得到相同的
    buildDirectory，使同一定义的多次运行可以复用构建目录。
    """
    variables = job.environment.variables
    logger.debug(
        "workspace resolution started",
        extra={"event": "workspace.resolve.started", "payload_preview": variables},
    )
    system = _require(variables, SYSTEM)
    collection_id = _require(variables, COLLECTION_ID)
    definition_id = _require(variables, DEFINITION_ID)
    backfill_collection_uri(job)

    hash_input = build_hash_input(
        collection_id,
        definition_id,
        [endpoint.url for endpoint in job.environment.endpoints],
    )
    working_directory = work_folder if work_folder.is_absolute() else (Path.cwd() / work_folder).resolve()
    build_directory = working_directory / system / sha256_text(hash_input)
    paths = WorkspacePaths(
        working_directory=working_directory,
        build_directory=build_directory,
        staging_directory=build_directory / "staging",
    )

    variables[WORKING_DIRECTORY] = str(paths.working_directory)
    variables[BUILD_DIRECTORY] = str(paths.build_directory)
    variables[STAGING_DIRECTORY] = str(paths.staging_directory)
    logger.debug(
        "workspace resolution finished",
        extra={"event": "workspace.resolve.succeeded", "payload_preview": variables},
    )
    return paths
