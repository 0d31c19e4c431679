"""授权句柄：用系统连接中的访问令牌为出站请求签名。"""

from __future__ import annotations

from typing import Generator

import httpx

from agent_worker.domain.errors import ConfigurationError
from agent_worker.domain.models import JobDescription


class BearerAuth(httpx.Auth):
    """为每个请求附加 Bearer 令牌的 httpx 认证对象。"""

    def __init__(self, token: str) -> None:
        if not token:
            raise ConfigurationError("bearer token is empty")
        self._token = token

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._token}"
        yield request

    def __repr__(self) -> str:
        return "BearerAuth(token=***)"


def build_authorization(job: JobDescription) -> BearerAuth:
    """从 job.environment.systemConnection 构造授权句柄；缺失时抛出 ConfigurationError。"""
    connection = job.environment.system_connection
    if connection is None:
        raise ConfigurationError("system connection token not supplied. unsupported deployment.")
    token = connection.access_token
    if not token:
        raise ConfigurationError("system connection has no AccessToken parameter")
    return BearerAuth(token)
