"""领域枚举定义：消息类型、掩码类型、任务结果与作业生命周期状态。"""

from __future__ import annotations

from enum import Enum


class MessageType(str, Enum):
    """Worker 入站消息类型枚举。"""
    job = "job"


class MaskType(str, Enum):
    """日志掩码提示类型，线上以整数或名称传输。"""
    variable = "variable"
    regex = "regex"

    @classmethod
    def from_wire(cls, value: object) -> "MaskType":
        """将线上整数/名称解码为枚举值，未知值直接报错。"""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            try:
                return _MASK_TYPE_BY_CODE[value]
            except KeyError:
                raise ValueError(f"unknown mask type code: {value}") from None
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls.from_wire(int(text))
            for member in cls:
                if member.value == text.lower():
                    return member
        raise ValueError(f"unknown mask type: {value!r}")


_MASK_TYPE_BY_CODE = {1: MaskType.variable, 2: MaskType.regex}


class TaskResult(str, Enum):
    """作业/任务执行结果，服务端以整数编码。"""
    succeeded = "succeeded"
    succeeded_with_issues = "succeeded_with_issues"
    failed = "failed"
    canceled = "canceled"
    skipped = "skipped"
    abandoned = "abandoned"

    @property
    def code(self) -> int:
        return _TASK_RESULT_CODES[self]


_TASK_RESULT_CODES = {
    TaskResult.succeeded: 0,
    TaskResult.succeeded_with_issues: 1,
    TaskResult.failed: 2,
    TaskResult.canceled: 3,
    TaskResult.skipped: 4,
    TaskResult.abandoned: 5,
}


class LifecycleState(str, Enum):
    """单个作业在 worker 内的生命周期状态。"""
    idle = "idle"
    preparing = "preparing"
    auth_resolved = "auth_resolved"
    running = "running"
    finalizing = "finalizing"
    terminated = "terminated"


class FinalizeTrigger(str, Enum):
    """触发收尾的事件来源。"""
    engine_completed = "engine_completed"
    abandoned = "abandoned"
