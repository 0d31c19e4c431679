"""反馈通道测试：结果上报、状态批量排空与续租 404 触发放弃事件。"""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from agent_worker.domain.enums import TaskResult
from agent_worker.domain.errors import FinalizeError
from agent_worker.domain.models import JobMessage
from agent_worker.infra.server.feedback import HttpFeedbackChannel


def _channel(job_payload, handler, **kwargs) -> HttpFeedbackChannel:
    job = JobMessage.model_validate(job_payload()).job_description()
    options = {"flush_interval_seconds": 60.0, "lock_renewal_interval_seconds": 60.0}
    options.update(kwargs)
    return HttpFeedbackChannel(
        "https://tfs.example",
        "https://tfs.example/DefaultCollection",
        job,
        transport=httpx.MockTransport(handler),
        **options,
    )


@pytest.mark.asyncio
async def test_finish_job_posts_result(job_payload) -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    channel = _channel(job_payload, handler)
    await channel.finish_job(TaskResult.failed)
    await channel.drain()

    request = seen[0]
    body = json.loads(request.content)
    assert request.url.path == "/_apis/distributedtask/requests/42/finish"
    assert request.url.params["lockToken"] == "lock-1"
    assert body["result"] == "failed"
    assert body["resultCode"] == 2


@pytest.mark.asyncio
async def test_finish_failure_raises_finalize_error(job_payload) -> None:
    channel = _channel(job_payload, lambda request: httpx.Response(503))
    with pytest.raises(FinalizeError):
        await channel.finish_job(TaskResult.succeeded)
    await channel.drain()


@pytest.mark.asyncio
async def test_drain_flushes_pending_statuses_once(job_payload) -> None:
    """排空时剩余状态作为一个批次上报；重复排空不再发送请求。"""
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    channel = _channel(job_payload, handler)
    channel.start()
    channel.queue_status("one")
    channel.queue_status("two")
    await channel.drain()
    await channel.drain()
    channel.queue_status("ignored")

    assert len(seen) == 1
    assert seen[0].url.path == "/DefaultCollection/_apis/distributedtask/jobs/job-1/feed"
    payload = json.loads(seen[0].content)
    assert payload["count"] == 2
    assert [item["message"] for item in payload["value"]] == ["one", "two"]


@pytest.mark.asyncio
async def test_drain_flush_failure_raises_finalize_error(job_payload) -> None:
    channel = _channel(job_payload, lambda request: httpx.Response(500))
    channel.queue_status("lost")
    with pytest.raises(FinalizeError):
        await channel.drain()


@pytest.mark.asyncio
async def test_renewal_not_found_signals_abandonment_once(job_payload) -> None:
    abandoned: list[str] = []
    renewals: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/renew"):
            renewals.append(request)
            return httpx.Response(404)
        return httpx.Response(200)

    channel = _channel(job_payload, handler, lock_renewal_interval_seconds=0.01)
    channel.on_abandoned(lambda: abandoned.append("abandoned"))
    channel.start()
    for _ in range(100):
        if abandoned:
            break
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.05)
    await channel.drain()

    assert abandoned == ["abandoned"]
    assert len(renewals) == 1
    assert renewals[0].url.path == "/_apis/distributedtask/requests/42/renew"


@pytest.mark.asyncio
async def test_drain_resends_batch_of_cancelled_flush(job_payload) -> None:
    """后台上报请求挂起时排空会取消它，批次随最终 flush 重新发送。"""
    first_started = asyncio.Event()
    delivered: list[int] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        if not first_started.is_set():
            first_started.set()
            await asyncio.Event().wait()
        delivered.append(json.loads(request.content)["count"])
        return httpx.Response(200)

    channel = _channel(job_payload, handler, flush_interval_seconds=0.01)
    channel.queue_status("in flight")
    channel.start()
    await asyncio.wait_for(first_started.wait(), timeout=5)
    await channel.drain()

    assert delivered == [1]


@pytest.mark.asyncio
async def test_failed_periodic_flush_keeps_batch(job_payload) -> None:
    attempts: list[int] = []
    delivered: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(1)
        if len(attempts) == 1:
            return httpx.Response(500)
        delivered.append(json.loads(request.content)["count"])
        return httpx.Response(200)

    channel = _channel(job_payload, handler, flush_interval_seconds=0.01)
    channel.queue_status("retry me")
    channel.start()
    for _ in range(100):
        if attempts:
            break
        await asyncio.sleep(0.01)
    await channel.drain()

    assert delivered == [1]
