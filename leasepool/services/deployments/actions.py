from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator


RegionConcurrencyType = Literal["SEQUENTIAL", "PARALLEL"]
ConcurrencyMode = Literal["STRICT_FAILURE_TOLERANCE", "SOFT_FAILURE_TOLERANCE"]
ActionStatus = Literal["SUCCEEDED", "FAILED", "IN_PROGRESS"]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class _Action(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class CreateAction(_Action):
    action: Literal["CREATE"]
    blueprint_id: str = Field(min_length=1)
    lease_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    regions: list[str] = Field(min_length=1)
    region_concurrency_type: RegionConcurrencyType
    max_concurrent_percentage: int | None = Field(default=None, ge=1, le=100)
    failure_tolerance_percentage: int | None = Field(default=None, ge=0, le=100)
    concurrency_mode: ConcurrencyMode | None = None
    # Workflow start time; CHECK_STATUS looks the deployment record up by it.
    execution_start_time: datetime

    @field_validator("execution_start_time")
    @classmethod
    def normalize_start(cls, value: datetime) -> datetime:
        return _as_utc(value)


class CheckStatusAction(_Action):
    action: Literal["CHECK_STATUS"]
    operation_id: str = Field(min_length=1)
    blueprint_id: str = Field(min_length=1)
    target_id: str = Field(min_length=1)
    lease_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    deployment_timeout_minutes: float = Field(gt=0)
    execution_start_time: datetime

    @field_validator("execution_start_time")
    @classmethod
    def normalize_start(cls, value: datetime) -> datetime:
        return _as_utc(value)


class PublishResultAction(_Action):
    action: Literal["PUBLISH_RESULT"]
    lease_id: str = Field(min_length=1)
    user_email: str = Field(min_length=1)
    blueprint_id: str = Field(min_length=1)
    blueprint_name: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    operation_id: str = Field(min_length=1)
    status: Literal["SUCCEEDED", "FAILED"]
    error_message: str | None = None


OrchestratorAction = Annotated[
    Union[CreateAction, CheckStatusAction, PublishResultAction],
    Field(discriminator="action"),
]

_action_adapter: TypeAdapter[Any] = TypeAdapter(OrchestratorAction)


def parse_action(payload: Any) -> CreateAction | CheckStatusAction | PublishResultAction:
    # Raises pydantic.ValidationError before any external call is made.
    if isinstance(payload, (CreateAction, CheckStatusAction, PublishResultAction)):
        return payload
    return _action_adapter.validate_python(payload)


class CreateResult(BaseModel):
    success: bool
    operation_id: str
    status: ActionStatus
    error_message: str = ""
    error_type: str | None = None


class CheckStatusResult(BaseModel):
    operation_id: str
    status: ActionStatus
    error_message: str = ""
    error_type: str | None = None


class PublishResult(BaseModel):
    published: bool
    status: Literal["SUCCEEDED", "FAILED"]


ActionResult = Union[CreateResult, CheckStatusResult, PublishResult]
