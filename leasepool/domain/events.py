from __future__ import annotations

from datetime import datetime
from typing import Annotated, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field


ThresholdAction = Literal["ALERT", "FREEZE"]


def _event_id() -> str:
    return str(uuid4())


class LeaseIdentity(BaseModel):
    # Leases are addressed by owner plus uuid downstream.
    user_email: str
    uuid: str


class LeaseBudgetExceeded(BaseModel):
    type: Literal["LeaseBudgetExceeded"] = "LeaseBudgetExceeded"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    account_id: str
    budget: float | None = None
    total_spend: float


class LeaseExpired(BaseModel):
    type: Literal["LeaseExpired"] = "LeaseExpired"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    account_id: str
    lease_expiration_date: datetime


class LeaseBudgetThresholdBreached(BaseModel):
    type: Literal["LeaseBudgetThresholdBreached"] = "LeaseBudgetThresholdBreached"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    account_id: str
    budget: float | None = None
    budget_threshold_triggered: float
    total_spend: float
    action_requested: ThresholdAction


class LeaseDurationThresholdBreached(BaseModel):
    type: Literal["LeaseDurationThresholdBreached"] = "LeaseDurationThresholdBreached"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    account_id: str
    triggered_duration_threshold: float
    lease_duration_in_hours: int | None = None
    action_requested: ThresholdAction


class BudgetFreezeReason(BaseModel):
    type: Literal["BudgetExceeded"] = "BudgetExceeded"
    triggered_budget_threshold: float
    budget: float | None = None
    total_spend: float


class DurationFreezeReason(BaseModel):
    type: Literal["Expired"] = "Expired"
    triggered_duration_threshold: float
    lease_duration_in_hours: float | None = None


FreezeReason = Annotated[Union[BudgetFreezeReason, DurationFreezeReason], Field(discriminator="type")]


class LeaseFreezeRequested(BaseModel):
    type: Literal["LeaseFreezeRequested"] = "LeaseFreezeRequested"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    account_id: str
    reason: FreezeReason


class DeploymentSucceeded(BaseModel):
    type: Literal["DeploymentSucceeded"] = "DeploymentSucceeded"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    blueprint_id: str
    blueprint_name: str
    account_id: str
    operation_id: str


class DeploymentFailed(BaseModel):
    type: Literal["DeploymentFailed"] = "DeploymentFailed"
    event_id: str = Field(default_factory=_event_id)
    lease_id: LeaseIdentity
    blueprint_id: str
    blueprint_name: str
    account_id: str
    operation_id: str
    error_message: str


LeaseEvent = Union[
    LeaseBudgetExceeded,
    LeaseExpired,
    LeaseBudgetThresholdBreached,
    LeaseDurationThresholdBreached,
    LeaseFreezeRequested,
]
DeploymentEvent = Union[DeploymentSucceeded, DeploymentFailed]
LifecycleEvent = Annotated[Union[LeaseEvent, DeploymentEvent], Field(discriminator="type")]
