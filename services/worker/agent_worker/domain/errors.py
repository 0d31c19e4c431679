"""Worker 异常分类。"""

from __future__ import annotations


class AgentWorkerError(RuntimeError):
    pass


class ConfigurationError(AgentWorkerError):
    """缺少授权来源或作业标识变量等配置问题。"""


class TaskDownloadError(AgentWorkerError):
    """任务目录列举或任务包下载失败。"""


class TaskExtractionError(AgentWorkerError):
    """任务包压缩文件损坏或无法解压。"""


class EngineError(AgentWorkerError):
    pass


class FinalizeError(AgentWorkerError):
    """反馈通道 finish/drain 失败；只记录，不阻止作业终止。"""
