"""测试公共夹具：作业消息构造器。"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest


@pytest.fixture
def job_payload(tmp_path: Path) -> Callable[..., dict[str, Any]]:
    """构造 job 类型入站消息。"""

    def build(
        *,
        endpoints: tuple[str, ...] = ("https://git.example/repo.git",),
        system_connection: bool = True,
        creds: bool = False,
        tasks: list[dict[str, str]] | None = None,
        variables: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        job_variables = {
            "system": "build",
            "system.collectionId": "coll-1",
            "system.definitionId": "7",
            "secret.var": "hunter2",
        }
        if variables is not None:
            job_variables = variables
        connection = None
        if system_connection:
            connection = {
                "url": "https://tfs.example/DefaultCollection",
                "authorization": {"scheme": "OAuth", "parameters": {"AccessToken": "tok-123"}},
            }
        return {
            "messageType": "job",
            "config": {
                "settings": {"serverUrl": "https://tfs.example", "workFolder": str(tmp_path / "work")},
                "creds": {"username": "alt-user", "password": "alt-pass"} if creds else None,
            },
            "data": {
                "jobId": "job-1",
                "requestId": 42,
                "lockToken": "lock-1",
                "jobName": "CI build",
                "environment": {
                    "variables": job_variables,
                    "endpoints": [{"url": url} for url in endpoints],
                    "mask": [{"type": 1, "value": "secret.var"}],
                    "systemConnection": connection,
                },
                "authorization": {"serverUrl": "https://tfs.example"},
                "tasks": tasks or [],
            },
        }

    return build
