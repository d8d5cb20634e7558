from __future__ import annotations

import re
from datetime import datetime
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from leasepool.domain.thresholds import BudgetThreshold, DurationThreshold


LeaseStatus = Literal["PendingApproval", "ApprovalDenied", "Provisioning", "Active", "Frozen", "Expired"]
RegionConcurrencyType = Literal["SEQUENTIAL", "PARALLEL"]
ConcurrencyMode = Literal["STRICT_FAILURE_TOLERANCE", "SOFT_FAILURE_TOLERANCE"]

BLUEPRINT_NAME_PATTERN = r"^[a-zA-Z][a-zA-Z0-9-]{0,49}$"
_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
_TAG_KEY_RE = re.compile(r"^[a-zA-Z0-9_\-:./@ +=$%&*()\[\]{}|\\!#^~?]+$")
_TAG_VALUE_RE = re.compile(r"^[a-zA-Z0-9_\-:./@ +=$%&*()\[\]{}|\\!#^~?]*$")
MAX_TAGS = 10


def _new_id() -> str:
    return str(uuid4())


def _check_regions(regions: list[str] | None) -> list[str] | None:
    if regions is not None and len(set(regions)) != len(regions):
        raise ValueError("Duplicate regions are not allowed. Each region must be unique.")
    return regions


def _check_tags(tags: dict[str, str] | None) -> dict[str, str] | None:
    if tags is None:
        return None
    if len(tags) > MAX_TAGS:
        raise ValueError(f"At most {MAX_TAGS} tags are allowed")
    for key, value in tags.items():
        if not 1 <= len(key) <= 128 or not _TAG_KEY_RE.match(key):
            raise ValueError(f"Invalid tag key: {key!r}")
        if key.lower().startswith("aws:"):
            raise ValueError(f"Tag key uses a reserved prefix: {key!r}")
        if len(value) > 256 or not _TAG_VALUE_RE.match(value):
            raise ValueError(f"Invalid tag value for {key!r}")
    return tags


class LeaseDraft(BaseModel):
    # Fields supplied when an approved lease is first written.
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_id)
    user_email: str = Field(pattern=_EMAIL_PATTERN)
    status: LeaseStatus = "PendingApproval"
    account_id: str | None = None
    start_date: datetime | None = None
    expiration_date: datetime | None = None
    lease_duration_in_hours: float | None = Field(default=None, gt=0)
    max_spend: float | None = Field(default=None, gt=0)
    budget_thresholds: list[BudgetThreshold] = Field(default_factory=list)
    duration_thresholds: list[DurationThreshold] = Field(default_factory=list)
    total_cost_accrued: float = Field(default=0.0, ge=0)
    last_checked_date: datetime | None = None


class LeasePatch(BaseModel):
    # Partial lease update; only explicitly set fields are written.
    model_config = ConfigDict(extra="forbid")

    status: LeaseStatus | None = None
    account_id: str | None = None
    start_date: datetime | None = None
    expiration_date: datetime | None = None
    lease_duration_in_hours: float | None = Field(default=None, gt=0)
    max_spend: float | None = Field(default=None, gt=0)
    budget_thresholds: list[BudgetThreshold] | None = None
    duration_thresholds: list[DurationThreshold] | None = None
    total_cost_accrued: float | None = Field(default=None, ge=0)
    last_checked_date: datetime | None = None
    archived_at: datetime | None = None


class DeploymentTargetDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    target_id: str = Field(min_length=1)
    regions: list[str] = Field(min_length=1)
    deployment_order: int = Field(default=1, ge=1)
    max_concurrent_percentage: int = Field(default=100, ge=1, le=100)
    failure_tolerance_percentage: int = Field(default=0, ge=0, le=100)
    concurrency_mode: ConcurrencyMode = "STRICT_FAILURE_TOLERANCE"

    @field_validator("regions")
    @classmethod
    def unique_regions(cls, value: list[str] | None) -> list[str] | None:
        return _check_regions(value)


class DeploymentTargetPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    regions: list[str] | None = Field(default=None, min_length=1)
    deployment_order: int | None = Field(default=None, ge=1)
    max_concurrent_percentage: int | None = Field(default=None, ge=1, le=100)
    failure_tolerance_percentage: int | None = Field(default=None, ge=0, le=100)
    concurrency_mode: ConcurrencyMode | None = None

    @field_validator("regions")
    @classmethod
    def unique_regions(cls, value: list[str] | None) -> list[str] | None:
        return _check_regions(value)


class BlueprintDraft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(default_factory=_new_id)
    name: str = Field(pattern=BLUEPRINT_NAME_PATTERN)
    created_by: str = Field(pattern=_EMAIL_PATTERN)
    tags: dict[str, str] | None = None
    deployment_timeout_minutes: int = Field(default=30, ge=5, le=480)
    region_concurrency_type: RegionConcurrencyType = "SEQUENTIAL"

    @field_validator("tags")
    @classmethod
    def valid_tags(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _check_tags(value)


class BlueprintPatch(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, pattern=BLUEPRINT_NAME_PATTERN)
    tags: dict[str, str] | None = None
    deployment_timeout_minutes: int | None = Field(default=None, ge=5, le=480)
    region_concurrency_type: RegionConcurrencyType | None = None

    @field_validator("tags")
    @classmethod
    def valid_tags(cls, value: dict[str, str] | None) -> dict[str, str] | None:
        return _check_tags(value)
