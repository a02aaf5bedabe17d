"""DeskPilot – Job Schemas.

Jobs are a tagged union: each JobType owns exactly one payload model, and
the payload is validated when the job is built, not when a handler reads it.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field, TypeAdapter

from app.core.models import Channel


class JobType(str, Enum):
    INGEST = "ingest"
    RESPOND = "respond"
    NOTIFY_ESCALATION = "notify_escalation"


class IngestPayload(BaseModel):
    """A normalized inbound customer message waiting to be stored."""

    channel: Channel
    customer_external_id: str
    text: str = ""
    platform_timestamp: str | int | float | None = None
    platform_message_id: str | None = None
    customer_name: str | None = None


class RespondPayload(BaseModel):
    """A stored customer turn that needs an AI reply or an escalation."""

    conversation_id: int
    customer_message: str
    channel: Channel
    message_id: int | None = None


class EscalationNotice(BaseModel):
    conversation_id: int
    reason: str = "Escalation criteria met"


class _JobBase(BaseModel):
    id: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0


class IngestJob(_JobBase):
    type: Literal["ingest"] = "ingest"
    payload: IngestPayload


class RespondJob(_JobBase):
    type: Literal["respond"] = "respond"
    payload: RespondPayload


class NotifyEscalationJob(_JobBase):
    type: Literal["notify_escalation"] = "notify_escalation"
    payload: EscalationNotice


Job = Annotated[Union[IngestJob, RespondJob, NotifyEscalationJob], Field(discriminator="type")]

JOB_MODELS: dict[JobType, type[_JobBase]] = {
    JobType.INGEST: IngestJob,
    JobType.RESPOND: RespondJob,
    JobType.NOTIFY_ESCALATION: NotifyEscalationJob,
}

_job_adapter: TypeAdapter = TypeAdapter(Job)


def new_job_id(prefix: str) -> str:
    return f"{prefix}-{uuid4().hex}"


def build_job(job_type: JobType, payload: BaseModel | dict[str, Any], job_id: str) -> _JobBase:
    """Construct a typed job; raises pydantic.ValidationError on a payload mismatch."""
    model = JOB_MODELS[JobType(job_type)]
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return model.model_validate({"id": job_id, "payload": payload})


def job_from_json(raw: str | bytes) -> _JobBase:
    return _job_adapter.validate_json(raw)
