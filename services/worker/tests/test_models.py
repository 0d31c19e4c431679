"""消息模型解码测试。"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from agent_worker.domain.enums import MaskType, TaskResult
from agent_worker.domain.models import CredentialContext, JobDescription, JobMessage, MaskHint, TaskDefinition


def test_job_message_decodes_job_description(job_payload) -> None:
    message = JobMessage.model_validate(job_payload(tasks=[{"id": "A", "name": "build", "version": "1.2.0"}]))

    job = message.job_description()
    assert isinstance(job, JobDescription)
    assert job.request_id == 42
    assert job.tasks[0].key == ("A", "1.2.0")
    assert job.environment.system_connection.access_token == "tok-123"


def test_non_job_data_is_left_untouched() -> None:
    message = JobMessage.model_validate({"messageType": "cancel", "data": {"jobId": "x"}})
    assert message.job_description() is None
    assert message.data == {"jobId": "x"}


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(1, MaskType.variable), (2, MaskType.regex), ("2", MaskType.regex), ("Variable", MaskType.variable)],
)
def test_mask_type_decoding(raw, expected) -> None:
    assert MaskHint.model_validate({"type": raw, "value": "v"}).type is expected


@pytest.mark.parametrize("raw", [0, 3, "secret", True])
def test_unknown_mask_type_is_rejected(raw) -> None:
    with pytest.raises(ValidationError):
        MaskHint.model_validate({"type": raw, "value": "v"})


def test_task_definition_accepts_version_object() -> None:
    definition = TaskDefinition.model_validate(
        {"id": "A", "name": "build", "version": {"major": 2, "minor": 10, "patch": 1}}
    )
    assert definition.version == "2.10.1"
    assert definition.to_instance().key == ("A", "2.10.1")


def test_task_result_codes() -> None:
    assert [result.code for result in TaskResult] == [0, 1, 2, 3, 4, 5]


def test_credential_context_from_config(job_payload) -> None:
    without = JobMessage.model_validate(job_payload())
    with_creds = JobMessage.model_validate(job_payload(creds=True))

    assert CredentialContext.from_config(without.config) is None
    context = CredentialContext.from_config(with_creds.config)
    assert context.as_env() == {"altusername": "alt-user", "altpassword": "alt-pass"}
