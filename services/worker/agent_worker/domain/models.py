"""领域数据结构定义：作业消息、作业描述、任务包标识与工作区路径等值对象。"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from agent_worker.domain.enums import MaskType, MessageType


class WireModel(BaseModel):
    """线上模型基类：字段按 camelCase 收发，同时允许 snake_case 构造。"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class AgentSettings(WireModel):
    """消息内携带的 agent 配置段。"""
    server_url: str | None = None
    work_folder: str | None = None
    agent_name: str | None = None
    pool_name: str | None = None


class AgentCredentials(WireModel):
    username: str
    password: str


class AgentConfiguration(WireModel):
    settings: AgentSettings = Field(default_factory=AgentSettings)
    creds: AgentCredentials | None = None


class ServiceEndpoint(WireModel):
    url: str
    name: str | None = None


class MaskHint(WireModel):
    """日志掩码提示；type 在消息边界处解码为封闭枚举。"""
    type: MaskType
    value: str

    @field_validator("type", mode="before")
    @classmethod
    def _decode_type(cls, value: Any) -> MaskType:
        return MaskType.from_wire(value)


class EndpointAuthorization(WireModel):
    scheme: str | None = None
    parameters: dict[str, str] = Field(default_factory=dict)


class SystemConnection(WireModel):
    url: str
    authorization: EndpointAuthorization = Field(default_factory=EndpointAuthorization)

    @property
    def access_token(self) -> str | None:
        return self.authorization.parameters.get("AccessToken") or None


class JobEnvironment(WireModel):
    variables: dict[str, str] = Field(default_factory=dict)
    endpoints: list[ServiceEndpoint] = Field(default_factory=list)
    mask: list[MaskHint] = Field(default_factory=list)
    system_connection: SystemConnection | None = None


class JobAuthorization(WireModel):
    server_url: str


class TaskInstance(WireModel):
    """作业引用的任务包标识，按 (id, version) 去重。"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str

    @property
    def key(self) -> tuple[str, str]:
        return self.id, self.version


class TaskDefinition(WireModel):
    """任务目录条目；version 兼容字符串与 {major, minor, patch} 对象两种形态。"""
    id: str
    name: str
    version: str

    @field_validator("version", mode="before")
    @classmethod
    def _normalize_version(cls, value: Any) -> str:
        if isinstance(value, dict):
            return f"{value.get('major', 0)}.{value.get('minor', 0)}.{value.get('patch', 0)}"
        return str(value)

    def to_instance(self) -> TaskInstance:
        return TaskInstance(id=self.id, name=self.name, version=self.version)


class JobDescription(WireModel):
    """单个作业的完整描述，variables 在准备阶段会被补充。"""
    job_id: str | None = None
    request_id: int | None = None
    lock_token: str | None = None
    job_name: str
    environment: JobEnvironment = Field(default_factory=JobEnvironment)
    authorization: JobAuthorization
    tasks: list[TaskInstance] = Field(default_factory=list)


class JobMessage(WireModel):
    """Worker 入站消息；仅 job 类型的 data 会被解码为 JobDescription。"""
    message_type: str
    config: AgentConfiguration | None = None
    data: Any = None

    @model_validator(mode="after")
    def _decode_job(self) -> "JobMessage":
        if self.is_job and not isinstance(self.data, JobDescription):
            self.data = JobDescription.model_validate(self.data)
        return self

    @property
    def is_job(self) -> bool:
        return self.message_type == MessageType.job.value

    def job_description(self) -> JobDescription | None:
        return self.data if self.is_job else None


@dataclass(slots=True, frozen=True)
class WorkspacePaths:
    """由作业标识推导出的工作区路径。"""
    working_directory: Path
    build_directory: Path
    staging_directory: Path


@dataclass(slots=True, frozen=True)
class CredentialContext:
    """备用凭据，显式传给作业引擎而不写入进程环境变量。"""
    username: str
    password: str

    @classmethod
    def from_config(cls, config: AgentConfiguration | None) -> "CredentialContext | None":
        if config is None or config.creds is None:
            return None
        return cls(username=config.creds.username, password=config.creds.password)

    def as_env(self) -> dict[str, str]:
        return {"altusername": self.username, "altpassword": self.password}
